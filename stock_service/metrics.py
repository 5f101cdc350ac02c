from prometheus_client import Counter

RESERVATIONS = Counter(
    "stock_reservations_total",
    "Stock reservation outcomes",
    ["outcome"],  # reserved | rejected | duplicate | skipped_cancelled
)

RELEASES = Counter(
    "stock_releases_total",
    "Stock releases triggered by order.cancelled",
    ["outcome"],  # released | deferred | tombstoned | nothing_held | duplicate
)

LOW_STOCK_WARNINGS = Counter(
    "stock_low_stock_warnings_total",
    "Reservations that left a product at or below its reorder level",
    ["product_id"],
)
