# Overview: Pytest coverage for dashboard figures, sales history and reports.

from datetime import timedelta

import pytest

from backoffice.models import Sale
from backoffice.services import reporting_service
from backoffice.services.cancellation_service import cancel_sale_item
from backoffice.services.checkout_service import Cart, add_to_cart, checkout
from backoffice.services.reporting_service import DashboardFeed, ReportError
from backoffice.services.scope_service import resolve_scope
from backoffice.time_utils import day_window, utcnow


def sell(product, quantity, cashier, site):
    cart = Cart()
    add_to_cart(cart, product, quantity)
    return checkout(cart, cashier.id, site.id)


@pytest.fixture
def two_site_sales(site_a, site_b, cashier_a, cashier_b, beer, chips, make_product):
    """Site A: 2 Lager + 3 Chips. Site B: 1 Cider."""
    cider = make_product(stock=4, selling=500, purchase=200, name="Cider", site=site_b)
    a1 = sell(beer, 2, cashier_a, site_a)
    a2 = sell(chips, 3, cashier_a, site_a)
    b1 = sell(cider, 1, cashier_b, site_b)
    return {"a1": a1, "a2": a2, "b1": b1, "cider": cider}


class TestDashboardStats:
    def test_admin_all_sites(self, admin, two_site_sales):
        stats = reporting_service.get_dashboard_stats(resolve_scope(admin))

        assert stats["today_sales_cents"] == 800 + 750 + 500
        assert stats["today_profit_cents"] == 500 + 450 + 300
        assert stats["items_sold"] == 6
        assert stats["site_ids"] is None
        assert stats["total_profit_cents"] == 1250
        assert "recent_withdrawals" in stats

    def test_manager_all_sites_is_narrowed(self, manager_a, two_site_sales):
        stats = reporting_service.get_dashboard_stats(resolve_scope(manager_a, None))

        assert stats["site_ids"] == [manager_a.site_id]
        assert stats["today_sales_cents"] == 1550
        assert stats["today_profit_cents"] is None
        assert "total_capital_cents" not in stats

    def test_cancelled_items_excluded(self, db_session, admin, beer, cashier_a, site_a):
        result = sell(beer, 2, cashier_a, site_a)
        item = db_session.get(Sale, result.sale_id).items[0]
        cancel_sale_item(item.id, beer.id, 2)

        stats = reporting_service.get_dashboard_stats(resolve_scope(admin, site_a.id))

        assert stats["items_sold"] == 0
        assert stats["today_sales_cents"] == 0

    def test_window_is_half_open(self, db_session, admin, beer, cashier_a, site_a):
        result = sell(beer, 1, cashier_a, site_a)
        start, end = day_window()
        db_session.get(Sale, result.sale_id).created_at = end
        db_session.commit()

        stats = reporting_service.get_dashboard_stats(resolve_scope(admin), start, end)
        assert stats["items_sold"] == 0

    def test_low_stock_alerts(self, admin, site_a, make_product):
        make_product(stock=1, alert_threshold=3, name="Gin")

        stats = reporting_service.get_dashboard_stats(resolve_scope(admin, site_a.id))

        assert stats["low_stock_count"] == 1
        assert stats["low_stock_alerts"][0]["message"] == "Low stock for Gin (1 left)"

    def test_inverted_window_rejected(self, admin):
        start, end = day_window()
        with pytest.raises(ReportError):
            reporting_service.get_dashboard_stats(resolve_scope(admin), end, start)


class TestSalesHistory:
    def test_newest_first_with_cashier_name(self, admin, two_site_sales):
        entries = list(reporting_service.get_sales_history(resolve_scope(admin)))

        assert [e["sale"]["id"] for e in entries] == [
            two_site_sales["b1"].sale_id,
            two_site_sales["a2"].sale_id,
            two_site_sales["a1"].sale_id,
        ]
        assert entries[0]["cashier_name"] == "Cashier_B"
        assert entries[0]["items"][0]["product_name"] == "Cider"
        assert entries[0]["live_profit_cents"] == 300

    def test_site_scope_and_no_profit_for_cashier(self, cashier_a, two_site_sales):
        entries = list(reporting_service.get_sales_history(resolve_scope(cashier_a)))

        assert len(entries) == 2
        assert "live_profit_cents" not in entries[0]
        assert "profit_cents" not in entries[0]["sale"]

    def test_fully_cancelled_sale_is_skipped(self, db_session, admin, beer, cashier_a, site_a):
        result = sell(beer, 2, cashier_a, site_a)
        item = db_session.get(Sale, result.sale_id).items[0]
        cancel_sale_item(item.id, beer.id, 2)

        assert list(reporting_service.get_sales_history(resolve_scope(admin))) == []

    def test_live_total_next_to_snapshot(self, db_session, admin, beer, chips, cashier_a, site_a):
        cart = Cart()
        add_to_cart(cart, beer, 2)
        add_to_cart(cart, chips, 1)
        result = checkout(cart, cashier_a.id, site_a.id)
        chips_item = [i for i in db_session.get(Sale, result.sale_id).items if i.product_id == chips.id][0]
        cancel_sale_item(chips_item.id, chips.id, 1)

        entry = next(reporting_service.get_sales_history(resolve_scope(admin)))

        assert entry["sale"]["total_cents"] == 1050
        assert entry["live_total_cents"] == 800

    def test_pages_through_batches(self, admin, beer, cashier_a, site_a):
        ids = [sell(beer, 1, cashier_a, site_a).sale_id for _ in range(5)]

        entries = list(reporting_service.get_sales_history(resolve_scope(admin), batch_size=2))

        assert [e["sale"]["id"] for e in entries] == list(reversed(ids))

    def test_bounds_are_inclusive(self, db_session, admin, beer, cashier_a, site_a):
        result = sell(beer, 1, cashier_a, site_a)
        created = db_session.get(Sale, result.sale_id).created_at

        entries = list(reporting_service.get_sales_history(resolve_scope(admin), created, created))
        assert len(entries) == 1

        later = created + timedelta(seconds=1)
        assert list(reporting_service.get_sales_history(resolve_scope(admin), later, None)) == []


class TestReports:
    def test_daily_report_has_one_row_per_day(self, admin, two_site_sales):
        report = reporting_service.daily_sales_report(resolve_scope(admin), days=7)

        assert len(report["rows"]) == 7
        today = report["rows"][-1]
        assert today["date"] == utcnow().strftime("%Y-%m-%d")
        assert today["total_cents"] == 2050
        assert today["sales_count"] == 3
        assert sum(r["total_cents"] for r in report["rows"][:-1]) == 0

    def test_top_products(self, manager_a, two_site_sales):
        rows = reporting_service.top_products(resolve_scope(manager_a))
        assert [r["name"] for r in rows] == ["Chips", "Lager"]
        assert rows[0]["quantity"] == 3

    def test_cashier_items(self, cashier_a, cashier_b, two_site_sales):
        items = reporting_service.cashier_items(resolve_scope(cashier_a), cashier_a.id)
        assert sorted(i["product_name"] for i in items) == ["Chips", "Lager"]
        assert reporting_service.cashier_items(resolve_scope(cashier_a), cashier_b.id) == []


class TestDashboardFeed:
    def test_refreshes_on_sales_in_scope(self, manager_a, site_a, site_b, cashier_a, cashier_b, beer, make_product):
        cider = make_product(stock=4, name="Cider", site=site_b)
        seen = []

        with DashboardFeed(resolve_scope(manager_a), on_change=seen.append) as feed:
            assert feed.refresh_count == 1
            baseline = feed.refresh_count

            sell(cider, 1, cashier_b, site_b)
            assert feed.refresh_count == baseline

            sell(beer, 2, cashier_a, site_a)
            assert feed.refresh_count > baseline
            assert feed.stats["items_sold"] == 2

        count = feed.refresh_count
        sell(beer, 1, cashier_a, site_a)
        assert feed.refresh_count == count
        assert seen[-1] is feed.stats

    def test_refreshes_on_cancellation(self, db_session, admin, beer, cashier_a, site_a):
        result = sell(beer, 2, cashier_a, site_a)
        item = db_session.get(Sale, result.sale_id).items[0]

        with DashboardFeed(resolve_scope(admin, site_a.id)) as feed:
            assert feed.stats["items_sold"] == 2
            cancel_sale_item(item.id, beer.id, 2)
            assert feed.stats["items_sold"] == 0
