import logging
import os

from config import DATABASE_URL, PLAN_TEMPLATES
from database import Database

logger = logging.getLogger(__name__)


def init_database(db_url=DATABASE_URL, admin_email=None):
    """Initialize database and create default data"""
    db = Database(db_url)
    logger.info("Database tables created")

    if admin_email and db.get_user_by_email(admin_email) is None:
        db.create_user(email=admin_email, username="admin", is_admin=True)
        logger.info(f"Admin user {admin_email} created")

    if not db.get_active_plans():
        for template in PLAN_TEMPLATES.values():
            db.create_plan(**template)
        logger.info(f"Created {len(PLAN_TEMPLATES)} default plans")

    return db


def main():
    logging.basicConfig(level=logging.INFO)
    init_database(admin_email=os.getenv("PANEL_ADMIN_EMAIL"))


if __name__ == "__main__":
    main()
