# Overview: Change notifications for the aggregation layer.

"""
In-process change feed.

Each signal is sent after the write it describes has been committed, with
keyword arguments identifying the row and its site:

- sale_inserted(sale_id=, site_id=)
- product_updated(product_id=, site_id=)
- sale_item_updated(sale_item_id=, sale_id=, site_id=)

Receivers are called synchronously in the sending request and must not
raise; reporting_service.DashboardFeed is the main subscriber.
"""

from blinker import Namespace

_signals = Namespace()

sale_inserted = _signals.signal("sale-inserted")
product_updated = _signals.signal("product-updated")
sale_item_updated = _signals.signal("sale-item-updated")
