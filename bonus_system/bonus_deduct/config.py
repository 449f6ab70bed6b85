"""
Конфігурація та константи для списання бонусів в угодах Bitrix24
"""
import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Поля угоди Bitrix24
BONUS_FIELD = "UF_CRM_1686472442416"  # Сума бонусів до списання
ALLOCATION_NOTE_FIELD = "UF_CRM_1744097917673"  # Розподіл бонусів по товарах
OPPORTUNITY_FIELD = "OPPORTUNITY"

# Смарт-процес "Скидочная система": запис "Товары без бонусов"
NO_BONUS_ENTITY_TYPE_ID = 161
NO_BONUS_ITEM_ID = 4
NO_BONUS_PRODUCTS_FIELD = "ufCrm6_1745296707776"

# Смарт-процес "Макс. списания/начисления бонусов": група з підвищеним лімітом
MAX_DISCOUNT_ENTITY_TYPE_ID = 1044
MAX_DISCOUNT_ITEM_ID = 8
MAX_DISCOUNT_PERCENT_FIELD = "ufCrm12_1744002374"
MAX_DISCOUNT_PRODUCTS_FIELD = "ufCrm12_1744639109"

# Тип знижки в товарних рядках: 1 - сума, 2 - відсоток
DISCOUNT_TYPE_MONETARY = 1

DEFAULT_MAX_DISCOUNT_PERCENT = Decimal('0.15')  # 15% від вартості рядка


@dataclass(frozen=True)
class Settings:
    """Налаштування сервісу, завантажуються один раз при старті Lambda"""
    bitrix_webhook_url: Optional[str] = None
    webhook_s3_bucket: str = 'bitrix-bonus-webhook'
    webhook_s3_key: str = 'bitrix/webhook.json'
    webhook_kms_key_id: Optional[str] = None
    init_token: Optional[str] = None
    bitrix_timeout: int = 20
    bitrix_max_retries: int = 3
    bitrix_max_workers: int = 4
    carry_forward_discount: bool = True
    default_max_discount_percent: Decimal = DEFAULT_MAX_DISCOUNT_PERCENT
    log_level: str = 'INFO'


def _parse_bool(value: str) -> bool:
    if value.strip().lower() in ('1', 'true', 'yes', 'on'):
        return True
    if value.strip().lower() in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(value)


def _parse_percent(value: str) -> Decimal:
    try:
        percent = Decimal(value)
    except InvalidOperation:
        raise ValueError(value)
    if percent > 1:
        percent = percent / 100
    if not 0 < percent <= 1:
        raise ValueError(value)
    return percent


def _parse_positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise ValueError(value)
    return number


OPTIONAL_VARS = {
    'WEBHOOK_S3_BUCKET': ('webhook_s3_bucket', str),
    'WEBHOOK_S3_KEY': ('webhook_s3_key', str),
    'BITRIX_TIMEOUT': ('bitrix_timeout', _parse_positive_int),
    'BITRIX_MAX_RETRIES': ('bitrix_max_retries', int),
    'BITRIX_MAX_WORKERS': ('bitrix_max_workers', _parse_positive_int),
    'CARRY_FORWARD_DISCOUNT': ('carry_forward_discount', _parse_bool),
    'DEFAULT_MAX_DISCOUNT_PERCENT': ('default_max_discount_percent', _parse_percent),
    'LOG_LEVEL': ('log_level', str.upper),
}

SECRET_VARS = {
    'BITRIX_WEBHOOK_URL': 'bitrix_webhook_url',
    'WEBHOOK_KMS_KEY_ID': 'webhook_kms_key_id',
    'INIT_TOKEN': 'init_token',
}


def load_settings(env: Optional[Dict[str, str]] = None, dotenv_path: Optional[str] = None) -> Settings:
    """
    Завантаження та валідація налаштувань зі змінних середовища

    Локально змінні підтягуються з .env файлу. Некоректні значення
    не зупиняють запуск - використовується значення за замовчуванням
    з попередженням у лог.
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = dict(os.environ)

    defaults = Settings()
    values = {}
    warnings = []

    for var_name, attr in SECRET_VARS.items():
        value = (env.get(var_name) or '').strip()
        if value:
            values[attr] = value
            logger.info(f"✅ {var_name}: встановлено")

    for var_name, (attr, parser) in OPTIONAL_VARS.items():
        raw = env.get(var_name)
        if raw is None or raw == '':
            continue
        try:
            values[attr] = parser(raw)
            logger.info(f"✅ {var_name}: {raw}")
        except (ValueError, TypeError):
            warnings.append(f"⚠️ Некоректне значення {var_name}={raw}, використовуємо {getattr(defaults, attr)}")

    for warning in warnings:
        logger.warning(warning)

    settings = Settings(**values)
    if not settings.bitrix_webhook_url:
        logger.info(f"ℹ️ BITRIX_WEBHOOK_URL не задано, посилання береться з s3://{settings.webhook_s3_bucket}/{settings.webhook_s3_key}")

    logger.info(f"🎯 Конфігурацію завантажено ({len(warnings)} попереджень)")
    return settings
