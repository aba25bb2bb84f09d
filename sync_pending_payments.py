import json
import logging
import sys

from dojo.db import get_client
from dojo.log import configure_logging
from dojo.sync import sync_pending_payments

configure_logging('sync_payments.log')
logger = logging.getLogger(__name__)


def main():
    try:
        summary = sync_pending_payments(get_client())
    except Exception as e:
        logger.error(f"Pending payment sync failed: {str(e)}")
        print(f"Error: {str(e)}")
        return 1
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
