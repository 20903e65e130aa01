import logging

from telegram import Bot
from telegram.error import TelegramError

from config import ADMIN_ID, BOT_TOKEN, MESSAGES

logger = logging.getLogger(__name__)


class AdminNotifier:
    """Sends operator alerts to the admin's Telegram chat."""

    def __init__(self, bot=None, admin_id=ADMIN_ID):
        if bot is None and BOT_TOKEN:
            bot = Bot(BOT_TOKEN)
        self.bot = bot
        self.admin_id = admin_id

    @property
    def enabled(self):
        return self.bot is not None and bool(self.admin_id)

    async def send(self, text: str):
        if not self.enabled:
            logger.warning(f"Admin alert not sent (notifier disabled): {text.strip()}")
            return False
        try:
            async with self.bot:
                await self.bot.send_message(chat_id=self.admin_id, text=text)
            return True
        except TelegramError as e:
            logger.error(f"Failed to notify admin: {e}")
            return False

    async def settlement_failed(self, order_no: str, error: str):
        return await self.send(MESSAGES["settlement_failed"].format(order_no=order_no, error=error))
