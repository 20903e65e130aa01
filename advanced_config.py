# Order Settings
ORDER_SETTINGS = {
    "order_no_prefix": "NP",
    "order_no_attempts": 3,
    "expire_minutes": 30,  # pending orders are advisory-expired after this
    "default_page_size": 20,
    "max_page_size": 100,
    "auto_cancel_expired": False,  # opt-in sweep, see maintenance.py
}

# Coupon Settings
COUPON_SETTINGS = {
    "code_length": 12,
    "code_charset": "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789",
}

# Recharge Settings
RECHARGE_SETTINGS = {
    "code_length": 16,
    "max_batch": 100,
}

# Cleanup Settings
CLEANUP_SETTINGS = {
    "old_logs_days": 90,  # Delete logs older than 90 days
    "interval_seconds": 86400,
}

# Path Settings
PATH_SETTINGS = {
    "log_dir": "logs",
}
