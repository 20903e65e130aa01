import os
import pytz

# Admin alerts (Telegram)
BOT_TOKEN = os.getenv("PANEL_BOT_TOKEN", "")
ADMIN_ID = int(os.getenv("PANEL_ADMIN_ID", "0"))

# Database Configuration
DATABASE_URL = os.getenv("PANEL_DATABASE_URL", "sqlite:///vpn_panel.db")

# Public address used in gateway callbacks and invite links
SITE_URL = os.getenv("PANEL_SITE_URL", "http://localhost:8080")

# Web listener for gateway notifications
WEB_SETTINGS = {
    "host": os.getenv("PANEL_WEB_HOST", "0.0.0.0"),
    "port": int(os.getenv("PANEL_WEB_PORT", "8080")),
}

# Payment Settings
PAYMENT_CONFIG = {
    "epay": {
        "enabled": os.getenv("PANEL_EPAY_ENABLED", "false") == "true",
        "url": os.getenv("PANEL_EPAY_URL", "https://pay.example.com/"),
        "pid": os.getenv("PANEL_EPAY_PID", ""),
        "key": os.getenv("PANEL_EPAY_KEY", ""),
        "notify_url": SITE_URL + "/api/v1/payment/notify/alipay",
        "return_url": SITE_URL + "/user/orders",
    },
    "stripe": {
        "enabled": os.getenv("PANEL_STRIPE_ENABLED", "false") == "true",
        "api_key": os.getenv("PANEL_STRIPE_API_KEY", ""),
        "webhook_key": os.getenv("PANEL_STRIPE_WEBHOOK_KEY", ""),
        "currency": "cny",
        "success_url": SITE_URL + "/user/orders?status=success",
        "cancel_url": SITE_URL + "/user/orders?status=cancel",
    },
    "balance": {
        "enabled": True,
    },
}

# Invite Settings
INVITE_SETTINGS = {
    "enabled": os.getenv("PANEL_INVITE_ENABLED", "true") == "true",
    "commission_rate": float(os.getenv("PANEL_INVITE_COMMISSION_RATE", "0.1")),  # 0-1
}

# Plan Templates
PLAN_TEMPLATES = {
    "basic": {
        "name": "Basic",
        "price": 10,
        "duration": 30,  # days
        "transfer": 100,  # GB
        "group_id": 1,
    },
    "premium": {
        "name": "Premium",
        "price": 25,
        "duration": 90,
        "transfer": 500,
        "group_id": 2,
    }
}

# Messages
MESSAGES = {
    "settlement_failed": """
❌ Settlement failed
Order: {order_no}
Error: {error}
The order is marked paid; entitlements need manual reconciliation.
    """,
}

# Timezone
TIMEZONE = pytz.timezone(os.getenv("PANEL_TIMEZONE", "Asia/Shanghai"))
