"""
Per-user admin sidebar customization.

Gated by the ``MENU_CUSTOMIZATION_ENABLED`` config flag (checked by the
blueprint). A user without a stored row gets the default layout.
"""

import logging

from flask import current_app

from admin_console.core.exceptions import ValidationError
from admin_console.models import db
from admin_console.models.audit import write_audit
from admin_console.models.settings import MenuCustomization

logger = logging.getLogger(__name__)

MENU_SECTIONS = ("dashboard", "business", "financial", "operations", "system")
MAX_BOOKMARKS = 20
MAX_HIDDEN_ITEMS = 200
SIDEBAR_MIN_WIDTH = 160
SIDEBAR_MAX_WIDTH = 420
SIDEBAR_DEFAULT_WIDTH = 256


def is_enabled() -> bool:
    return bool(current_app.config.get("MENU_CUSTOMIZATION_ENABLED"))


def default_menu_customization() -> dict:
    return {
        "sectionOrder": list(MENU_SECTIONS),
        "hiddenItems": [],
        "practiceItems": [],
        "bookmarks": [],
        "sidebar": {"collapsed": False, "width": SIDEBAR_DEFAULT_WIDTH},
    }


def clamp_width(width) -> int:
    return max(SIDEBAR_MIN_WIDTH, min(SIDEBAR_MAX_WIDTH, int(width)))


def get_menu_customization(user_id) -> dict:
    row = MenuCustomization.query.filter_by(user_id=user_id).first()
    return row.to_dict() if row else default_menu_customization()


# ── Validation ───────────────────────────────────────────────────────────────

def _validate_section_order(value, errors):
    if not isinstance(value, list) or not all(isinstance(s, str) for s in value):
        errors["sectionOrder"] = "must be a list of section names"
        return
    unknown = [s for s in value if s not in MENU_SECTIONS]
    if unknown:
        errors["sectionOrder"] = f"unknown sections: {', '.join(unknown)}"
    elif len(set(value)) != len(value):
        errors["sectionOrder"] = "contains duplicates"
    elif set(value) != set(MENU_SECTIONS):
        missing = [s for s in MENU_SECTIONS if s not in value]
        errors["sectionOrder"] = f"missing sections: {', '.join(missing)}"


def _validate_items(key, value, errors, limit=None):
    if not isinstance(value, list):
        errors[key] = "must be a list"
        return
    if limit is not None and len(value) > limit:
        errors[key] = f"at most {limit} entries"
        return
    ids = []
    for idx, item in enumerate(value):
        if not isinstance(item, dict) or not item.get("id"):
            errors[key] = f"entry {idx} must be an object with an id"
            return
        ids.append(item["id"])
    if len(set(ids)) != len(ids):
        errors[key] = "duplicate ids"


def validate_menu_customization(data) -> dict:
    """Return the normalised fields present in *data*; raise ValidationError."""
    if not isinstance(data, dict):
        raise ValidationError("Menu customization must be an object")
    errors = {}
    clean = {}

    if "sectionOrder" in data:
        _validate_section_order(data["sectionOrder"], errors)
        clean["section_order"] = data["sectionOrder"]
    if "hiddenItems" in data:
        hidden = data["hiddenItems"]
        if not isinstance(hidden, list) or not all(isinstance(h, str) for h in hidden):
            errors["hiddenItems"] = "must be a list of strings"
        elif len(hidden) > MAX_HIDDEN_ITEMS:
            errors["hiddenItems"] = f"at most {MAX_HIDDEN_ITEMS} entries"
        else:
            clean["hidden_items"] = list(dict.fromkeys(hidden))
    if "practiceItems" in data:
        _validate_items("practiceItems", data["practiceItems"], errors)
        clean["practice_items"] = data["practiceItems"]
    if "bookmarks" in data:
        _validate_items("bookmarks", data["bookmarks"], errors, limit=MAX_BOOKMARKS)
        clean["bookmarks"] = data["bookmarks"]
    if "sidebar" in data:
        sidebar = data["sidebar"]
        if not isinstance(sidebar, dict):
            errors["sidebar"] = "must be an object"
        else:
            if "collapsed" in sidebar:
                if not isinstance(sidebar["collapsed"], bool):
                    errors["sidebar.collapsed"] = "must be a boolean"
                else:
                    clean["sidebar_collapsed"] = sidebar["collapsed"]
            if "width" in sidebar:
                width = sidebar["width"]
                if isinstance(width, bool) or not isinstance(width, (int, float)):
                    errors["sidebar.width"] = "must be a number"
                else:
                    clean["sidebar_width"] = clamp_width(width)

    if errors:
        raise ValidationError("Invalid menu customization", details=errors)
    return clean


# ── Persistence ──────────────────────────────────────────────────────────────

def save_menu_customization(user_id, tenant_id, data) -> dict:
    """Upsert the fields present in *data* over the stored (or default) layout."""
    clean = validate_menu_customization(data)
    row = MenuCustomization.query.filter_by(user_id=user_id).first()
    if row is None:
        defaults = default_menu_customization()
        row = MenuCustomization(
            user_id=user_id,
            tenant_id=tenant_id,
            section_order=defaults["sectionOrder"],
            hidden_items=[],
            practice_items=[],
            bookmarks=[],
            sidebar_collapsed=False,
            sidebar_width=SIDEBAR_DEFAULT_WIDTH,
        )
        db.session.add(row)
    for column, value in clean.items():
        setattr(row, column, value)

    write_audit(action="menu.update", resource="menu_customization", resource_id=user_id,
                tenant_id=tenant_id, user_id=user_id, details={"fields": sorted(clean)})
    db.session.commit()
    logger.debug("Menu customization saved for user %d", user_id,
                 extra={"tenant_id": tenant_id, "user_id": user_id})
    return row.to_dict()


def reset_menu_customization(user_id, tenant_id) -> dict:
    row = MenuCustomization.query.filter_by(user_id=user_id).first()
    if row is not None:
        db.session.delete(row)
        write_audit(action="menu.reset", resource="menu_customization", resource_id=user_id,
                    tenant_id=tenant_id, user_id=user_id)
        db.session.commit()
    return default_menu_customization()
