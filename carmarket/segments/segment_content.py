from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from sqlalchemy import or_

from carmarket.extensions import db
from carmarket.models import Banner, ContentPage, SiteSettings
from carmarket.services.admin_log import log_admin_action
from carmarket.utils.auth import require_admin
from carmarket.utils.http import error_response, json_body, not_found, parse_datetime
from carmarket.utils.text import slugify


content_admin_bp = Blueprint("content_admin_bp", __name__, url_prefix="/api/admin/content")
content_bp = Blueprint("content_bp", __name__, url_prefix="/api/content")

DEFAULT_SITE_NAME = "Kenya Car Marketplace"
_BANNER_TEXT = ("title", "description", "image_url", "link_url", "position")
_PAGE_TEXT = ("title", "content", "meta_title", "meta_description")
_SETTINGS_TEXT = ("site_name", "site_description", "contact_email", "contact_phone", "address")


def _apply_banner(banner: Banner, data: dict) -> str | None:
    for field in _BANNER_TEXT:
        if field in data:
            value = (str(data.get(field) or "")).strip()
            if field in ("title", "image_url", "position") and not value:
                return f"{field} cannot be empty"
            setattr(banner, field, value or None)
    for field in ("start_date", "end_date"):
        if field in data:
            raw = data.get(field)
            parsed = parse_datetime(raw)
            if raw not in (None, "") and parsed is None:
                return f"{field} must be an ISO date"
            setattr(banner, field, parsed)
    if banner.start_date and banner.end_date and banner.end_date < banner.start_date:
        return "end_date must be after start_date"
    if "is_active" in data:
        banner.is_active = bool(data.get("is_active"))
    return None


def site_settings() -> SiteSettings:
    row = SiteSettings.query.order_by(SiteSettings.id.asc()).first()
    if row is None:
        row = SiteSettings(site_name=DEFAULT_SITE_NAME, site_description="Buy, sell and hire cars across Kenya")
        row.social_links = {}
        row.seo_settings = {"default_title": DEFAULT_SITE_NAME}
        db.session.add(row)
        db.session.flush()
    return row


@content_admin_bp.get("/banners")
def admin_banners():
    _, err = require_admin()
    if err is not None:
        return err
    q = Banner.query
    position = (request.args.get("position") or "").strip()
    if position:
        q = q.filter(Banner.position == position)
    rows = q.order_by(Banner.created_at.desc(), Banner.id.desc()).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@content_admin_bp.post("/banners")
def create_banner():
    admin, err = require_admin()
    if err is not None:
        return err
    data = json_body()
    missing = [f for f in ("title", "image_url", "position") if not (str(data.get(f) or "")).strip()]
    if missing:
        return error_response(f"Missing required fields: {', '.join(missing)}", 400)
    banner = Banner(is_active=True)
    problem = _apply_banner(banner, data)
    if problem:
        return error_response(problem, 400)
    db.session.add(banner)
    db.session.flush()
    log_admin_action(admin, "banner_create", "banner", banner.id, {"position": banner.position})
    db.session.commit()
    return jsonify({"ok": True, "banner": banner.to_dict()}), 201


@content_admin_bp.patch("/banners/<int:banner_id>")
def update_banner(banner_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    banner = db.session.get(Banner, int(banner_id))
    if not banner:
        return not_found("Banner")
    data = json_body()
    problem = _apply_banner(banner, data)
    if problem:
        db.session.rollback()
        return error_response(problem, 400)
    banner.updated_at = datetime.utcnow()
    log_admin_action(admin, "banner_update", "banner", banner.id, {"fields": sorted(data.keys())})
    db.session.commit()
    return jsonify({"ok": True, "banner": banner.to_dict()}), 200


@content_admin_bp.delete("/banners/<int:banner_id>")
def delete_banner(banner_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    banner = db.session.get(Banner, int(banner_id))
    if not banner:
        return not_found("Banner")
    db.session.delete(banner)
    log_admin_action(admin, "banner_delete", "banner", banner_id)
    db.session.commit()
    return jsonify({"ok": True}), 200


@content_admin_bp.get("/pages")
def admin_pages():
    _, err = require_admin()
    if err is not None:
        return err
    rows = ContentPage.query.order_by(ContentPage.updated_at.desc(), ContentPage.id.desc()).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@content_admin_bp.post("/pages")
def create_page():
    admin, err = require_admin()
    if err is not None:
        return err
    data = json_body()
    slug = slugify(data.get("slug") or "")
    title = (data.get("title") or "").strip()
    content = (data.get("content") or "").strip()
    if not slug or not title or not content:
        return error_response("slug, title and content are required", 400)
    if ContentPage.query.filter_by(slug=slug).first():
        return error_response("A page with this slug already exists", 400)
    page = ContentPage(slug=slug, is_published=bool(data.get("is_published", True)))
    for field in _PAGE_TEXT:
        setattr(page, field, (str(data.get(field) or "")).strip() or None)
    db.session.add(page)
    db.session.flush()
    log_admin_action(admin, "page_create", "content_page", page.id, {"slug": slug})
    db.session.commit()
    return jsonify({"ok": True, "page": page.to_dict()}), 201


@content_admin_bp.patch("/pages/<int:page_id>")
def update_page(page_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    page = db.session.get(ContentPage, int(page_id))
    if not page:
        return not_found("Page")
    data = json_body()
    if "slug" in data:
        slug = slugify(data.get("slug") or "")
        if not slug:
            return error_response("slug cannot be empty", 400)
        if ContentPage.query.filter(ContentPage.slug == slug, ContentPage.id != int(page.id)).first():
            return error_response("A page with this slug already exists", 400)
        page.slug = slug
    for field in _PAGE_TEXT:
        if field in data:
            value = (str(data.get(field) or "")).strip()
            if field in ("title", "content") and not value:
                return error_response(f"{field} cannot be empty", 400)
            setattr(page, field, value or None)
    if "is_published" in data:
        page.is_published = bool(data.get("is_published"))
    page.updated_at = datetime.utcnow()
    log_admin_action(admin, "page_update", "content_page", page.id, {"fields": sorted(data.keys())})
    db.session.commit()
    return jsonify({"ok": True, "page": page.to_dict()}), 200


@content_admin_bp.delete("/pages/<int:page_id>")
def delete_page(page_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    page = db.session.get(ContentPage, int(page_id))
    if not page:
        return not_found("Page")
    slug = page.slug
    db.session.delete(page)
    log_admin_action(admin, "page_delete", "content_page", page_id, {"slug": slug})
    db.session.commit()
    return jsonify({"ok": True}), 200


@content_admin_bp.get("/settings")
def get_site_settings():
    _, err = require_admin()
    if err is not None:
        return err
    row = site_settings()
    db.session.commit()
    return jsonify({"ok": True, "settings": row.to_dict()}), 200


@content_admin_bp.put("/settings")
def put_site_settings():
    admin, err = require_admin()
    if err is not None:
        return err
    data = json_body()
    row = site_settings()
    if "site_name" in data and not (str(data.get("site_name") or "")).strip():
        return error_response("site_name cannot be empty", 400)
    for field in _SETTINGS_TEXT:
        if field in data:
            setattr(row, field, (str(data.get(field) or "")).strip() or None)
    for field in ("social_links", "seo_settings"):
        if field in data:
            if not isinstance(data.get(field), dict):
                return error_response(f"{field} must be an object", 400)
            setattr(row, field, data.get(field))
    row.updated_at = datetime.utcnow()
    log_admin_action(admin, "site_settings_update", "site_settings", row.id, {"fields": sorted(data.keys())})
    db.session.commit()
    return jsonify({"ok": True, "settings": row.to_dict()}), 200


@content_bp.get("/banners")
def public_banners():
    now = datetime.utcnow()
    q = Banner.query.filter(
        Banner.is_active.is_(True),
        or_(Banner.start_date.is_(None), Banner.start_date <= now),
        or_(Banner.end_date.is_(None), Banner.end_date >= now),
    )
    position = (request.args.get("position") or "").strip()
    if position:
        q = q.filter(Banner.position == position)
    rows = q.order_by(Banner.created_at.desc(), Banner.id.desc()).all()
    if rows:
        Banner.query.filter(Banner.id.in_([r.id for r in rows])).update(
            {Banner.impression_count: Banner.impression_count + 1}, synchronize_session=False
        )
        db.session.commit()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@content_bp.post("/banners/<int:banner_id>/click")
def banner_click(banner_id: int):
    banner = db.session.get(Banner, int(banner_id))
    if not banner or not banner.is_showing():
        return not_found("Banner")
    banner.click_count = int(banner.click_count or 0) + 1
    db.session.commit()
    return jsonify({"ok": True, "link_url": banner.link_url or ""}), 200


@content_bp.get("/pages/<slug>")
def public_page(slug: str):
    page = ContentPage.query.filter_by(slug=(slug or "").strip().lower(), is_published=True).first()
    if not page:
        return not_found("Page")
    return jsonify({"ok": True, "page": page.to_dict()}), 200
