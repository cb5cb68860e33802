"""
Menu customization tests (/api/v1/admin/menu-customization).
"""

import pytest

from admin_console.core.exceptions import ValidationError
from admin_console.models.audit import AuditLog
from admin_console.models.settings import MenuCustomization
from admin_console.services import menu_service

BASE = "/api/v1/admin/menu-customization"


class TestValidation:
    def test_width_is_clamped(self):
        assert menu_service.validate_menu_customization({"sidebar": {"width": 40}}) == {"sidebar_width": 160}
        assert menu_service.validate_menu_customization({"sidebar": {"width": 999}}) == {"sidebar_width": 420}

    def test_hidden_items_deduplicated(self):
        clean = menu_service.validate_menu_customization({"hiddenItems": ["a", "b", "a"]})
        assert clean == {"hidden_items": ["a", "b"]}

    @pytest.mark.parametrize("order, message", [
        (["dashboard", "business"], "missing sections"),
        (["dashboard", "business", "financial", "operations", "system", "system"], "contains duplicates"),
        (["dashboard", "marketing"], "unknown sections: marketing"),
    ])
    def test_section_order_errors(self, order, message):
        with pytest.raises(ValidationError) as exc:
            menu_service.validate_menu_customization({"sectionOrder": order})
        assert message in exc.value.details["sectionOrder"]

    def test_bookmark_limit(self):
        bookmarks = [{"id": f"b{i}"} for i in range(menu_service.MAX_BOOKMARKS + 1)]
        with pytest.raises(ValidationError) as exc:
            menu_service.validate_menu_customization({"bookmarks": bookmarks})
        assert exc.value.details == {"bookmarks": "at most 20 entries"}

    def test_collects_every_field_error(self):
        with pytest.raises(ValidationError) as exc:
            menu_service.validate_menu_customization({
                "practiceItems": [{"label": "no id"}],
                "sidebar": {"collapsed": "yes", "width": True},
            })
        assert set(exc.value.details) == {"practiceItems", "sidebar.collapsed", "sidebar.width"}


class TestService:
    def test_default_without_row(self, admin):
        assert menu_service.get_menu_customization(admin.id) == menu_service.default_menu_customization()

    def test_partial_save_keeps_defaults(self, admin, tenant):
        saved = menu_service.save_menu_customization(admin.id, tenant.id, {"sidebar": {"collapsed": True}})
        assert saved["sidebar"] == {"collapsed": True, "width": 256}
        assert saved["sectionOrder"] == list(menu_service.MENU_SECTIONS)

        saved = menu_service.save_menu_customization(admin.id, tenant.id, {"hiddenItems": ["reports"]})
        assert saved["sidebar"]["collapsed"] is True
        assert saved["hiddenItems"] == ["reports"]
        assert MenuCustomization.query.count() == 1

    def test_save_is_audited(self, admin, tenant):
        menu_service.save_menu_customization(admin.id, tenant.id, {"bookmarks": [{"id": "clients"}]})
        entry = AuditLog.query.filter_by(action="menu.update").one()
        assert entry.details == {"fields": ["bookmarks"]}

    def test_reset_deletes_row(self, admin, tenant):
        menu_service.save_menu_customization(admin.id, tenant.id, {"hiddenItems": ["x"]})
        result = menu_service.reset_menu_customization(admin.id, tenant.id)
        assert result == menu_service.default_menu_customization()
        assert MenuCustomization.query.count() == 0
        assert AuditLog.query.filter_by(action="menu.reset").count() == 1

    def test_reset_without_row_is_noop(self, admin, tenant):
        menu_service.reset_menu_customization(admin.id, tenant.id)
        assert AuditLog.query.filter_by(action="menu.reset").count() == 0


class TestApi:
    def test_any_role_may_customize(self, client, client_user, auth_headers):
        headers = auth_headers(client_user)
        res = client.put(BASE, json={"sidebar": {"width": 300}}, headers=headers)
        assert res.status_code == 200
        assert res.get_json()["sidebar"]["width"] == 300

        res = client.get(BASE, headers=headers)
        assert res.get_json()["sidebar"]["width"] == 300

    def test_layouts_are_per_user(self, client, admin, staff_user, auth_headers):
        client.put(BASE, json={"hiddenItems": ["audit"]}, headers=auth_headers(admin))
        res = client.get(BASE, headers=auth_headers(staff_user))
        assert res.get_json()["hiddenItems"] == []

    def test_invalid_body_is_422(self, client, admin, auth_headers):
        res = client.put(BASE, json={"sectionOrder": "dashboard"}, headers=auth_headers(admin))
        assert res.status_code == 422
        assert "sectionOrder" in res.get_json()["details"]

    def test_delete_resets(self, client, admin, auth_headers):
        headers = auth_headers(admin)
        client.put(BASE, json={"sidebar": {"collapsed": True}}, headers=headers)
        res = client.delete(BASE, headers=headers)
        assert res.status_code == 200
        assert res.get_json()["sidebar"] == {"collapsed": False, "width": 256}

    def test_requires_token(self, client):
        assert client.get(BASE).status_code == 401

    def test_disabled_flag_hides_endpoints(self, app, client, admin, auth_headers, monkeypatch):
        monkeypatch.setitem(app.config, "MENU_CUSTOMIZATION_ENABLED", False)
        res = client.get(BASE, headers=auth_headers(admin))
        assert res.status_code == 404
