"""
Декоратор повторних спроб для запитів до Bitrix24
"""
import time
import logging
from functools import wraps

logger = logging.getLogger(__name__)


def retry_on_failure(max_retries=3, delay=1.0, backoff=2.0, max_delay=10.0, exceptions=(Exception,)):
    """
    Декоратор для повторних спроб виконання функції при помилках

    Args:
        max_retries: Максимальна кількість повторних спроб
        delay: Затримка перед першою повторною спробою в секундах
        backoff: Множник затримки для кожної наступної спроби
        max_delay: Верхня межа затримки
        exceptions: Tuple з типами винятків, при яких робити retry
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            wait = delay
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        logger.error(f"❌ Всі {max_retries + 1} спроб {func.__name__} не вдалися: {e}")
                        raise
                    logger.warning(f"⚠️ Спроба {attempt + 1}/{max_retries + 1} не вдалася: {e}")
                    logger.info(f"⏳ Очікування {wait} секунд перед наступною спробою...")
                    time.sleep(wait)
                    wait = min(wait * backoff, max_delay)

        return wrapper
    return decorator
