import logging
import uuid

from dojo.errors import NotFoundError, ValidationError
from dojo.money import to_cents
from dojo.payments import create_initial_payment_record

logger = logging.getLogger(__name__)

ORDER_STATUSES = ('pending_payment', 'paid_pending_pickup', 'completed', 'cancelled')


def list_products(supabase, active_only=False):
    query = supabase.table('products').select('*')
    if active_only:
        query = query.eq('is_active', True)
    products = query.order('name').execute().data
    product_ids = [p['id'] for p in products]
    variants = supabase.table('product_variants').select('*').in_('product_id', product_ids).execute().data if product_ids else []
    variant_map = {}
    for variant in variants:
        if active_only and not variant.get('is_active'):
            continue
        variant_map.setdefault(variant['product_id'], []).append(variant)
    processed = []
    for product in products:
        product_copy = product.copy()
        product_copy['variants'] = variant_map.get(product['id'], [])
        processed.append(product_copy)
    return processed


def create_product(supabase, data):
    if not data.get('name'):
        raise ValidationError('Product name is required', {'name': 'Required'})
    row = supabase.table('products').insert({
        'id': str(uuid.uuid4()),
        'name': data['name'].strip(),
        'description': data.get('description') or None,
        'is_active': data.get('is_active', True),
    }).execute().data[0]
    logger.info(f"Added product: {row['id']}, {row['name']}")
    return row


def update_product(supabase, product_id, data):
    update = {k: data[k] for k in ('name', 'description', 'is_active') if k in data}
    rows = supabase.table('products').update(update).eq('id', product_id).execute().data
    if not rows:
        raise NotFoundError(f"Product {product_id} not found")
    return rows[0]


def delete_product(supabase, product_id):
    supabase.table('product_variants').update({'is_active': False}).eq('product_id', product_id).execute()
    supabase.table('products').update({'is_active': False}).eq('id', product_id).execute()
    logger.info(f"Deactivated product: {product_id}")


def _variant_data(data):
    variant = {k: data[k] for k in ('size', 'is_active') if k in data}
    if 'price' in data:
        try:
            variant['price_cents'] = to_cents(data['price'])
        except ValueError:
            raise ValidationError('Invalid price', {'price': 'Must be a dollar amount'})
        if variant['price_cents'] <= 0:
            raise ValidationError('Price must be greater than zero', {'price': 'Must be positive'})
    if 'stock_quantity' in data:
        variant['stock_quantity'] = int(data['stock_quantity'] or 0)
        if variant['stock_quantity'] < 0:
            raise ValidationError('Stock cannot be negative', {'stock_quantity': 'Must be zero or more'})
    return variant


def create_variant(supabase, product_id, data):
    variant = _variant_data(data)
    if 'price_cents' not in variant:
        raise ValidationError('Price is required', {'price': 'Required'})
    variant.update({'id': str(uuid.uuid4()), 'product_id': product_id})
    variant.setdefault('is_active', True)
    variant.setdefault('stock_quantity', 0)
    row = supabase.table('product_variants').insert(variant).execute().data[0]
    logger.info(f"Added variant {row['id']} to product {product_id}")
    return row


def update_variant(supabase, variant_id, data):
    rows = supabase.table('product_variants').update(_variant_data(data)).eq('id', variant_id).execute().data
    if not rows:
        raise NotFoundError(f"Variant {variant_id} not found")
    return rows[0]


def create_store_order(supabase, family_id, student_id, items):
    """Create a pending order and its store_purchase payment from [{variant_id, quantity}]."""
    if not items:
        raise ValidationError('Your cart is empty', {'items': 'Required'})
    quantities = {}
    for item in items:
        try:
            quantity = int(item.get('quantity') or 0)
        except (TypeError, ValueError):
            quantity = 0
        if quantity < 1:
            raise ValidationError('Quantity must be at least 1', {'quantity': 'Must be at least 1'})
        quantities[item['variant_id']] = quantities.get(item['variant_id'], 0) + quantity

    variants = supabase.table('product_variants').select('*').in_('id', list(quantities)).execute().data
    variant_map = {v['id']: v for v in variants}
    errors = {}
    for variant_id, quantity in quantities.items():
        variant = variant_map.get(variant_id)
        if not variant or not variant.get('is_active'):
            errors[variant_id] = 'No longer available'
        elif (variant.get('stock_quantity') or 0) < quantity:
            errors[variant_id] = f"Only {variant.get('stock_quantity') or 0} left in stock"
    if errors:
        raise ValidationError('Some items are unavailable', errors)

    subtotal = sum(variant_map[v]['price_cents'] * q for v, q in quantities.items())
    order = supabase.table('orders').insert({
        'id': str(uuid.uuid4()),
        'family_id': family_id,
        'student_id': student_id,
        'status': 'pending_payment',
        'total_amount_cents': subtotal,
    }).execute().data[0]
    supabase.table('order_items').insert([{
        'id': str(uuid.uuid4()),
        'order_id': order['id'],
        'product_variant_id': variant_id,
        'quantity': quantity,
        'price_per_item_cents': variant_map[variant_id]['price_cents'],
    } for variant_id, quantity in quantities.items()]).execute()

    payment = create_initial_payment_record(supabase, family_id, subtotal, [student_id] if student_id else [],
                                            'store_purchase', order_id=order['id'])
    logger.info(f"Created order {order['id']} with {len(quantities)} items for family {family_id}")
    return {'order_id': order['id'], 'payment_id': payment['id'], 'total_amount': payment['total_amount']}


def list_orders(supabase, family_id=None):
    query = supabase.table('orders').select('*')
    if family_id:
        query = query.eq('family_id', family_id)
    orders = query.order('created_at', desc=True).execute().data
    order_ids = [o['id'] for o in orders]
    items = supabase.table('order_items').select('*').in_('order_id', order_ids).execute().data if order_ids else []
    items_map = {}
    for item in items:
        items_map.setdefault(item['order_id'], []).append(item)
    processed = []
    for order in orders:
        order_copy = order.copy()
        order_copy['items'] = items_map.get(order['id'], [])
        processed.append(order_copy)
    return processed


def mark_order_picked_up(supabase, order_id):
    rows = supabase.table('orders').select('id, status').eq('id', order_id).limit(1).execute().data
    if not rows:
        raise NotFoundError(f"Order {order_id} not found")
    if rows[0]['status'] != 'paid_pending_pickup':
        raise ValidationError(f"Order is {rows[0]['status']}, only paid orders can be picked up")
    updated = supabase.table('orders').update({'status': 'completed'}).eq('id', order_id).execute().data[0]
    logger.info(f"Order {order_id} picked up")
    return updated
