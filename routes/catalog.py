"""
Catalogue endpoints: categories, products (with stock alerts) and suppliers.
"""
from flask import Blueprint, request
from flask_login import login_required, current_user
from sqlalchemy import func, or_
from decimal import Decimal
import logging

from models import (db, Category, Product, Supplier, Transaction, TransactionItem,
                    UNITS, SKU_PATTERN, MAX_PRICE, MAX_QUANTITY)
from .errors import ApiError, ok
from .utils import (get_json, clean_str, parse_decimal, paginate_query, get_owned_or_404,
                    log_action, invalidate_dashboard, like_pattern, validate_contact)

logger = logging.getLogger(__name__)

catalog_bp = Blueprint('catalog', __name__, url_prefix='/api')


# --- Categories ---

def _category_name_taken(name, exclude_id=None):
    q = Category.query.filter(Category.user_id == current_user.id,
                              func.lower(Category.name) == name.lower())
    if exclude_id is not None:
        q = q.filter(Category.id != exclude_id)
    return db.session.query(q.exists()).scalar()


def _validate_category(data, partial=False):
    errors = {}
    name = clean_str(data.get('name'))
    if not partial or 'name' in data:
        if not name:
            errors['name'] = ['name is required']
        elif len(name) > 100:
            errors['name'] = ['name must be at most 100 characters']
    description = clean_str(data.get('description'))
    if description and len(description) > 500:
        errors['description'] = ['description must be at most 500 characters']
    if errors:
        raise ApiError.validation(errors)
    return name, description


def _product_counts(column, ids):
    if not ids:
        return {}
    rows = db.session.query(column, func.count(Product.id)) \
        .filter(column.in_(ids)).group_by(column).all()
    return dict(rows)


@catalog_bp.route('/categories', methods=['GET'])
@login_required
def list_categories():
    query = Category.query.filter(Category.user_id == current_user.id)
    search = request.args.get('search')
    if search:
        query = query.filter(or_(Category.name.ilike(like_pattern(search)),
                                 Category.description.ilike(like_pattern(search))))
    items, metadata = paginate_query(query.order_by(Category.name))
    counts = _product_counts(Product.category_id, [c.id for c in items])
    return ok({"items": [c.to_dict(product_count=counts.get(c.id, 0)) for c in items],
               "metadata": metadata})


@catalog_bp.route('/categories', methods=['POST'])
@login_required
def create_category():
    name, description = _validate_category(get_json())
    if _category_name_taken(name):
        raise ApiError.conflict('A category with this name already exists')
    category = Category(user_id=current_user.id, name=name, description=description)
    db.session.add(category)
    log_action(f'Created category: {name}.')
    db.session.commit()
    return ok(category.to_dict(product_count=0), 201)


@catalog_bp.route('/categories/<int:category_id>', methods=['GET'])
@login_required
def get_category(category_id):
    category = get_owned_or_404(Category, category_id, 'Category')
    return ok(category.to_dict(product_count=category.products.count()))


@catalog_bp.route('/categories/<int:category_id>', methods=['PUT'])
@login_required
def update_category(category_id):
    category = get_owned_or_404(Category, category_id, 'Category')
    data = get_json()
    name, description = _validate_category(data, partial=True)
    if name and name.lower() != category.name.lower() and _category_name_taken(name, category.id):
        raise ApiError.conflict('A category with this name already exists')
    if name:
        category.name = name
    if 'description' in data:
        category.description = description
    log_action(f'Updated category #{category.id}: {category.name}.')
    db.session.commit()
    return ok(category.to_dict(product_count=category.products.count()))


@catalog_bp.route('/categories/<int:category_id>', methods=['DELETE'])
@login_required
def delete_category(category_id):
    category = get_owned_or_404(Category, category_id, 'Category')
    count = category.products.count()
    if count:
        raise ApiError.conflict(f'Cannot delete category with {count} associated product(s)')
    db.session.delete(category)
    log_action(f'Deleted category #{category_id}: {category.name}.')
    db.session.commit()
    return ok({"id": category_id})


# --- Suppliers ---

def _supplier_email_taken(email, exclude_id=None):
    q = Supplier.query.filter(Supplier.user_id == current_user.id,
                              func.lower(Supplier.email) == email.lower())
    if exclude_id is not None:
        q = q.filter(Supplier.id != exclude_id)
    return db.session.query(q.exists()).scalar()


@catalog_bp.route('/suppliers', methods=['GET'])
@login_required
def list_suppliers():
    query = Supplier.query.filter(Supplier.user_id == current_user.id)
    search = request.args.get('search')
    if search:
        query = query.filter(or_(Supplier.name.ilike(like_pattern(search)),
                                 Supplier.email.ilike(like_pattern(search)),
                                 Supplier.phone.ilike(like_pattern(search))))
    items, metadata = paginate_query(query.order_by(Supplier.name))
    counts = _product_counts(Product.supplier_id, [s.id for s in items])
    return ok({"items": [s.to_dict(product_count=counts.get(s.id, 0)) for s in items],
               "metadata": metadata})


@catalog_bp.route('/suppliers', methods=['POST'])
@login_required
def create_supplier():
    fields, errors = validate_contact(get_json())
    if errors:
        raise ApiError.validation(errors)
    if fields.get('email') and _supplier_email_taken(fields['email']):
        raise ApiError.conflict('A supplier with this email already exists')
    supplier = Supplier(user_id=current_user.id, **fields)
    db.session.add(supplier)
    log_action(f'Created supplier: {supplier.name}.')
    db.session.commit()
    return ok(supplier.to_dict(product_count=0), 201)


@catalog_bp.route('/suppliers/<int:supplier_id>', methods=['GET'])
@login_required
def get_supplier(supplier_id):
    supplier = get_owned_or_404(Supplier, supplier_id, 'Supplier')
    return ok(supplier.to_dict(product_count=supplier.products.count()))


@catalog_bp.route('/suppliers/<int:supplier_id>', methods=['PUT'])
@login_required
def update_supplier(supplier_id):
    supplier = get_owned_or_404(Supplier, supplier_id, 'Supplier')
    fields, errors = validate_contact(get_json(), partial=True)
    if errors:
        raise ApiError.validation(errors)
    email = fields.get('email')
    if email and (supplier.email or '').lower() != email.lower() and _supplier_email_taken(email, supplier.id):
        raise ApiError.conflict('A supplier with this email already exists')
    for key, value in fields.items():
        setattr(supplier, key, value)
    log_action(f'Updated supplier #{supplier.id}: {supplier.name}.')
    db.session.commit()
    return ok(supplier.to_dict(product_count=supplier.products.count()))


@catalog_bp.route('/suppliers/<int:supplier_id>', methods=['DELETE'])
@login_required
def delete_supplier(supplier_id):
    supplier = get_owned_or_404(Supplier, supplier_id, 'Supplier')
    products = supplier.products.count()
    if products:
        raise ApiError.conflict(f'Cannot delete supplier with {products} associated product(s)')
    if Transaction.query.filter_by(supplier_id=supplier.id).first():
        raise ApiError.conflict('Cannot delete supplier with existing transactions')
    db.session.delete(supplier)
    log_action(f'Deleted supplier #{supplier_id}: {supplier.name}.')
    db.session.commit()
    return ok({"id": supplier_id})


# --- Products ---

def _validate_product(data, partial=False):
    errors = {}
    fields = {}

    def present(key):
        return not partial or key in data

    if present('name'):
        name = clean_str(data.get('name'))
        if not name or not (2 <= len(name) <= 100):
            errors['name'] = ['name must be between 2 and 100 characters']
        fields['name'] = name
    if present('description'):
        fields['description'] = clean_str(data.get('description'))
    if present('sku'):
        sku = clean_str(data.get('sku')) or ''
        if not (3 <= len(sku) <= 50):
            errors['sku'] = ['SKU must be between 3 and 50 characters']
        elif not SKU_PATTERN.match(sku):
            errors['sku'] = ['SKU can only contain letters, numbers, hyphens and underscores']
        fields['sku'] = sku
    for key, attr in (('price', 'price'), ('costPrice', 'cost_price')):
        if key == 'costPrice' and key not in data:
            continue
        if present(key):
            value = parse_decimal(data.get(key), key, errors)
            if value is not None and not (Decimal('0') <= value <= MAX_PRICE):
                errors.setdefault(key, []).append(f'{key} must be between 0 and {MAX_PRICE}')
            fields[attr] = value
    for key, attr in (('quantity', 'quantity'), ('minQuantity', 'min_quantity')):
        if present(key):
            value = parse_decimal(data.get(key), key, errors, places='0.001', required=key == 'quantity')
            if value is None and key == 'minQuantity' and key not in errors:
                value = Decimal('0')
            if value is not None and not (Decimal('0') <= value <= MAX_QUANTITY):
                errors.setdefault(key, []).append(f'{key} must be between 0 and {MAX_QUANTITY}')
            fields[attr] = value
    if present('unit'):
        unit = clean_str(data.get('unit')) or 'PIECE'
        if unit not in UNITS:
            errors['unit'] = [f'unit must be one of {", ".join(UNITS)}']
        fields['unit'] = unit
    if present('image'):
        fields['image'] = clean_str(data.get('image'))
    for key, attr in (('categoryId', 'category_id'), ('supplierId', 'supplier_id')):
        if present(key):
            try:
                fields[attr] = int(data.get(key))
            except (TypeError, ValueError):
                errors[key] = [f'{key} is required']
    if errors:
        raise ApiError.validation(errors)
    return fields


def _check_product_refs(fields):
    if 'category_id' in fields:
        category = db.session.get(Category, fields['category_id'])
        if category is None or category.user_id != current_user.id:
            raise ApiError.bad_request('Category not found', {'categoryId': ['Category not found']})
    if 'supplier_id' in fields:
        supplier = db.session.get(Supplier, fields['supplier_id'])
        if supplier is None or supplier.user_id != current_user.id:
            raise ApiError.bad_request('Supplier not found', {'supplierId': ['Supplier not found']})


def _sku_taken(sku, exclude_id=None):
    q = Product.query.filter(Product.user_id == current_user.id, Product.sku == sku)
    if exclude_id is not None:
        q = q.filter(Product.id != exclude_id)
    return db.session.query(q.exists()).scalar()


@catalog_bp.route('/products', methods=['GET'])
@login_required
def list_products():
    query = Product.query.filter(Product.user_id == current_user.id)
    search = request.args.get('search')
    if search:
        query = query.filter(or_(Product.name.ilike(like_pattern(search)),
                                 Product.sku.ilike(like_pattern(search)),
                                 Product.description.ilike(like_pattern(search))))
    category_id = request.args.get('categoryId', type=int)
    if category_id:
        query = query.filter(Product.category_id == category_id)
    supplier_id = request.args.get('supplierId', type=int)
    if supplier_id:
        query = query.filter(Product.supplier_id == supplier_id)
    if request.args.get('lowStock') in ('1', 'true'):
        query = query.filter(Product.quantity < Product.min_quantity)
    items, metadata = paginate_query(query.order_by(Product.created_at.desc(), Product.id.desc()))
    return ok({"items": [p.to_dict() for p in items], "metadata": metadata})


@catalog_bp.route('/products', methods=['POST'])
@login_required
def create_product():
    fields = _validate_product(get_json())
    _check_product_refs(fields)
    if _sku_taken(fields['sku']):
        raise ApiError.conflict('A product with this SKU already exists')
    product = Product(user_id=current_user.id, **fields)
    db.session.add(product)
    log_action(f'Created product {product.sku}: {product.name}.')
    db.session.commit()
    invalidate_dashboard(current_user.id)
    return ok(product.to_dict(), 201)


@catalog_bp.route('/products/stock-alerts', methods=['GET'])
@login_required
def stock_alerts():
    products = Product.query.filter(
        Product.user_id == current_user.id,
        Product.quantity < Product.min_quantity,
    ).order_by(Product.quantity.asc()).all()
    return ok([p.to_dict() for p in products])


@catalog_bp.route('/products/<int:product_id>', methods=['GET'])
@login_required
def get_product(product_id):
    return ok(get_owned_or_404(Product, product_id, 'Product').to_dict())


@catalog_bp.route('/products/<int:product_id>', methods=['PUT'])
@login_required
def update_product(product_id):
    product = get_owned_or_404(Product, product_id, 'Product')
    fields = _validate_product(get_json(), partial=True)
    _check_product_refs(fields)
    if 'sku' in fields and fields['sku'] != product.sku and _sku_taken(fields['sku'], product.id):
        raise ApiError.conflict('A product with this SKU already exists')
    for key, value in fields.items():
        setattr(product, key, value)
    log_action(f'Updated product #{product.id} ({product.sku}).')
    db.session.commit()
    invalidate_dashboard(current_user.id)
    return ok(product.to_dict())


@catalog_bp.route('/products/<int:product_id>', methods=['DELETE'])
@login_required
def delete_product(product_id):
    product = get_owned_or_404(Product, product_id, 'Product')
    if TransactionItem.query.filter_by(product_id=product.id).first():
        raise ApiError.conflict('Cannot delete product that is used in transactions')
    db.session.delete(product)
    log_action(f'Deleted product #{product_id} ({product.sku}).')
    db.session.commit()
    invalidate_dashboard(current_user.id)
    return ok({"id": product_id})
