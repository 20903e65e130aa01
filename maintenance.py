import asyncio
import logging
import os
from datetime import datetime, timedelta

from advanced_config import CLEANUP_SETTINGS, ORDER_SETTINGS, PATH_SETTINGS
from config import DATABASE_URL
from database import Database, Order, utcnow

logger = logging.getLogger(__name__)


class CleanupManager:
    def __init__(self, db, settings=CLEANUP_SETTINGS, order_settings=ORDER_SETTINGS, log_dir=PATH_SETTINGS["log_dir"]):
        self.db = db
        self.settings = settings
        self.order_settings = order_settings
        self.log_dir = log_dir

    async def start_cleanup(self):
        """Run cleanup tasks forever"""
        while True:
            try:
                self.run_once()
                await asyncio.sleep(self.settings["interval_seconds"])
            except Exception as e:
                logger.error(f"Error in cleanup: {e}")
                await asyncio.sleep(3600)

    def run_once(self):
        self.cleanup_old_logs()
        self.cleanup_old_log_files()
        if self.order_settings.get("auto_cancel_expired"):
            self.cancel_expired_orders()

    def cleanup_old_logs(self):
        """Delete system and error logs past retention"""
        cutoff = utcnow() - timedelta(days=self.settings["old_logs_days"])
        system, errors = self.db.delete_logs_before(cutoff)
        logger.info(f"Removed {system} system logs and {errors} error logs older than {cutoff}")
        return system, errors

    def cleanup_old_log_files(self):
        """Delete rotated log files past retention"""
        if not os.path.isdir(self.log_dir):
            return 0
        cutoff = (datetime.now() - timedelta(days=self.settings["old_logs_days"])).timestamp()
        removed = 0
        for name in os.listdir(self.log_dir):
            path = os.path.join(self.log_dir, name)
            if os.path.isfile(path) and os.path.getmtime(path) < cutoff:
                os.remove(path)
                removed += 1
        if removed:
            logger.info(f"Removed {removed} old log files from {self.log_dir}")
        return removed

    def cancel_expired_orders(self):
        """Cancel pending orders past their expiry; a racing payment wins."""
        cancelled = 0
        for order in self.db.get_expired_pending_orders(utcnow()):
            if self.db.transition_order(order.id, Order.STATUS_PENDING, Order.STATUS_CANCELLED):
                cancelled += 1
                logger.info(f"Cancelled expired order {order.order_no}")
        return cancelled


def main():
    """Run maintenance tasks"""
    logging.basicConfig(level=logging.INFO)
    try:
        logger.info("Starting maintenance tasks...")
        CleanupManager(Database(DATABASE_URL)).run_once()
        logger.info("Maintenance tasks completed successfully!")
    except Exception as e:
        logger.error(f"Error during maintenance: {e}")
        raise


if __name__ == "__main__":
    main()
