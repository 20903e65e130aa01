import asyncio
import os
import logging

from aiohttp import web

from advanced_config import PATH_SETTINGS
from config import DATABASE_URL, INVITE_SETTINGS, PAYMENT_CONFIG, WEB_SETTINGS
from coupons import CouponService
from database import Database
from invites import InviteService
from maintenance import CleanupManager
from notifier import AdminNotifier
from orders import OrderService
from payments import build_gateways
from recharge import RechargeService
from settlement import SettlementProcessor
from web import create_app

logger = logging.getLogger(__name__)


def background_tasks(db):
    async def cleanup_context(app):
        task = asyncio.create_task(CleanupManager(db).start_cleanup())
        yield
        task.cancel()
    return cleanup_context


class Panel:
    """Wires every component once at process start."""

    def __init__(self, db_url=DATABASE_URL, payment_config=PAYMENT_CONFIG, invite_settings=INVITE_SETTINGS):
        self.db = Database(db_url)
        self.coupon_service = CouponService(self.db)
        self.invite_service = InviteService(self.db, invite_settings)
        self.settlement = SettlementProcessor(self.db, self.coupon_service, self.invite_service)
        self.recharge_service = RechargeService(self.db)
        self.order_service = OrderService(
            self.db,
            self.coupon_service,
            self.settlement,
            build_gateways(payment_config, self.db)
        )


def main():
    # Create required directories
    for directory in PATH_SETTINGS.values():
        os.makedirs(directory, exist_ok=True)

    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=logging.INFO,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(os.path.join(PATH_SETTINGS['log_dir'], 'panel.log')),
        ]
    )

    try:
        panel = Panel()
        app = create_app(panel.order_service, AdminNotifier())
        app.cleanup_ctx.append(background_tasks(panel.db))
        logger.info(f"Listening for payment notifications on {WEB_SETTINGS['host']}:{WEB_SETTINGS['port']}")
        web.run_app(app, host=WEB_SETTINGS['host'], port=WEB_SETTINGS['port'])
    except Exception as e:
        logger.error(f"Error starting panel: {e}")
        raise


if __name__ == '__main__':
    main()
