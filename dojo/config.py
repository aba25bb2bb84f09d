import os
from dotenv import load_dotenv

load_dotenv()

# Flask / Supabase
FLASK_SECRET_KEY = os.getenv('FLASK_SECRET_KEY', 'default-secret-key')
SUPABASE_URL = os.getenv('SUPABASE_URL')
SUPABASE_KEY = os.getenv('SUPABASE_KEY')
LOG_FILE = os.getenv('LOG_FILE', 'app.log')

# Payment providers
PAYMENT_PROVIDER = os.getenv('PAYMENT_PROVIDER', 'stripe').lower()

STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY')
STRIPE_PUBLISHABLE_KEY = os.getenv('STRIPE_PUBLISHABLE_KEY')
STRIPE_WEBHOOK_SECRET = os.getenv('STRIPE_WEBHOOK_SECRET')

SQUARE_APPLICATION_ID = os.getenv('SQUARE_APPLICATION_ID')
SQUARE_ACCESS_TOKEN = os.getenv('SQUARE_ACCESS_TOKEN')
SQUARE_LOCATION_ID = os.getenv('SQUARE_LOCATION_ID')
SQUARE_ENVIRONMENT = os.getenv('SQUARE_ENVIRONMENT', 'sandbox').lower()
SQUARE_WEBHOOK_SIGNATURE_KEY = os.getenv('SQUARE_WEBHOOK_SIGNATURE_KEY')
SQUARE_WEBHOOK_URL = os.getenv('SQUARE_WEBHOOK_URL')

# Site
SITE_NAME = os.getenv('SITE_NAME', 'Dojo Admin')
CURRENCY = 'CAD'
TIMEZONE = 'America/Vancouver'

# Default pricing in dollars, used when a program has no fee of its own
PRICING = {
    'monthly': 121,
    'yearly': 1200,
    'one_on_one_session': 80,
}

# Payment rules
PAYMENT_VALIDITY_DAYS = 35
GRACE_PERIOD_DAYS = 7
ATTENDANCE_LOOKBACK_DAYS = 30
PENDING_THRESHOLD_MINUTES = 15
RECENT_PAYMENT_DAYS = 32
PST_EXEMPT_AGE = 15
