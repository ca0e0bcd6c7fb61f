from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify
from sqlalchemy import func

from carmarket.extensions import db
from carmarket.models import Category, Listing
from carmarket.services.admin_log import log_admin_action
from carmarket.utils.auth import require_admin
from carmarket.utils.http import error_response, json_body, not_found, to_int
from carmarket.utils.text import slugify


categories_bp = Blueprint("categories_bp", __name__, url_prefix="/api/categories")


def _listing_counts() -> dict[int, int]:
    rows = (
        db.session.query(Listing.category_id, func.count(Listing.id))
        .filter(Listing.category_id.isnot(None), Listing.status == "active")
        .group_by(Listing.category_id)
        .all()
    )
    return {int(cid): int(n) for cid, n in rows}


def _validate_parent(parent_id, *, self_id: int | None = None):
    if parent_id is None:
        return None
    parent = db.session.get(Category, int(parent_id))
    if not parent:
        return error_response("Parent category not found", 400)
    if self_id is not None and int(parent.id) == int(self_id):
        return error_response("A category cannot be its own parent", 400)
    if not parent.is_root:
        return error_response("Categories can only be nested two levels deep", 400)
    return None


@categories_bp.get("")
def list_categories():
    rows = Category.query.filter_by(is_active=True).order_by(Category.sort_order.asc(), Category.name.asc()).all()
    counts = _listing_counts()
    by_parent: dict[int | None, list[dict]] = {}
    for row in rows:
        data = row.to_dict()
        data["listing_count"] = counts.get(int(row.id), 0)
        by_parent.setdefault(row.parent_id, []).append(data)
    items = []
    for root in by_parent.get(None, []):
        root["children"] = by_parent.get(root["id"], [])
        items.append(root)
    return jsonify({"ok": True, "items": items}), 200


@categories_bp.post("")
def create_category():
    admin, err = require_admin()
    if err is not None:
        return err
    data = json_body()
    name = (data.get("name") or "").strip()
    if not name:
        return error_response("name is required", 400)
    slug = slugify(name)
    if not slug:
        return error_response("name must contain letters or digits", 400)
    if Category.query.filter_by(slug=slug).first():
        return error_response("A category with this name already exists", 400)
    parent_id = to_int(data.get("parent_id"))
    parent_err = _validate_parent(parent_id)
    if parent_err is not None:
        return parent_err

    row = Category(
        name=name,
        slug=slug,
        description=(data.get("description") or "").strip() or None,
        icon=(data.get("icon") or "").strip() or None,
        parent_id=parent_id,
        sort_order=to_int(data.get("sort_order"), 0) or 0,
    )
    db.session.add(row)
    db.session.flush()
    log_admin_action(admin, "category_created", "category", row.id, {"name": name})
    db.session.commit()
    return jsonify({"ok": True, "category": row.to_dict()}), 201


@categories_bp.get("/<int:category_id>")
def get_category(category_id: int):
    row = db.session.get(Category, int(category_id))
    if not row:
        return not_found("Category")
    data = row.to_dict()
    data["children"] = [c.to_dict() for c in Category.query.filter_by(parent_id=row.id).order_by(Category.sort_order.asc()).all()]
    data["listing_count"] = _listing_counts().get(int(row.id), 0)
    return jsonify({"ok": True, "category": data}), 200


@categories_bp.patch("/<int:category_id>")
def update_category(category_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    row = db.session.get(Category, int(category_id))
    if not row:
        return not_found("Category")
    data = json_body()
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            return error_response("name cannot be empty", 400)
        slug = slugify(name)
        clash = Category.query.filter(Category.slug == slug, Category.id != row.id).first()
        if clash:
            return error_response("A category with this name already exists", 400)
        row.name = name
        row.slug = slug
    if "parent_id" in data:
        parent_id = to_int(data.get("parent_id"))
        parent_err = _validate_parent(parent_id, self_id=row.id)
        if parent_err is not None:
            return parent_err
        if parent_id is not None and row.has_children():
            return error_response("Categories can only be nested two levels deep", 400)
        row.parent_id = parent_id
    for field in ("description", "icon"):
        if field in data:
            setattr(row, field, (data.get(field) or "").strip() or None)
    if "sort_order" in data:
        row.sort_order = to_int(data.get("sort_order"), 0) or 0
    if "is_active" in data:
        row.is_active = bool(data.get("is_active"))
    row.updated_at = datetime.utcnow()
    log_admin_action(admin, "category_updated", "category", row.id, {k: data[k] for k in data if k != "description"})
    db.session.commit()
    return jsonify({"ok": True, "category": row.to_dict()}), 200


@categories_bp.delete("/<int:category_id>")
def delete_category(category_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    row = db.session.get(Category, int(category_id))
    if not row:
        return not_found("Category")
    if row.has_children():
        return error_response("Category has subcategories", 400)
    if Listing.query.filter_by(category_id=row.id).first():
        return error_response("Category has listings", 400)
    log_admin_action(admin, "category_deleted", "category", row.id, {"name": row.name})
    db.session.delete(row)
    db.session.commit()
    return jsonify({"ok": True}), 200
