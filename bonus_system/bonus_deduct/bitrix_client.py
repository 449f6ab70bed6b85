"""
Клієнт для роботи з REST API Bitrix24 через вхідний вебхук
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set

import requests

from .config import (
    MAX_DISCOUNT_ENTITY_TYPE_ID,
    MAX_DISCOUNT_ITEM_ID,
    MAX_DISCOUNT_PERCENT_FIELD,
    MAX_DISCOUNT_PRODUCTS_FIELD,
    NO_BONUS_ENTITY_TYPE_ID,
    NO_BONUS_ITEM_ID,
    NO_BONUS_PRODUCTS_FIELD,
    Settings,
)
from .decorators import retry_on_failure
from .utils import parse_money, to_id_set

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = (429, 500, 502, 503, 504)
RETRY_ERROR_CODES = ('QUERY_LIMIT_EXCEEDED', 'OPERATION_TIME_LIMIT')


class TransientBitrixError(Exception):
    """Тимчасова помилка Bitrix24, запит варто повторити"""


@dataclass(frozen=True)
class BonusPolicy:
    """Правила списання бонусів зі смарт-процесів"""
    no_bonus_ids: Set[str] = field(default_factory=set)
    max_discount_ids: Set[str] = field(default_factory=set)
    max_discount_percent: Optional[Decimal] = None

    def is_excluded(self, product_id: Any, parent_id: Any = None) -> bool:
        return _matches(self.no_bonus_ids, product_id, parent_id)

    def cap_for(self, product_id: Any, parent_id: Any, default: Decimal) -> Decimal:
        if self.max_discount_percent and _matches(self.max_discount_ids, product_id, parent_id):
            return self.max_discount_percent
        return default


def _matches(ids: Set[str], product_id: Any, parent_id: Any) -> bool:
    candidates = {str(value) for value in (product_id, parent_id) if value not in (None, '', 0, '0')}
    return bool(candidates & ids)


def parse_percent(value: Any) -> Optional[Decimal]:
    """Відсоток з поля смарт-процесу (50 -> 0.5); None якщо не задано або некоректний"""
    percent = parse_money(value) / 100
    if 0 < percent <= 1:
        return percent
    return None


class BitrixClient:
    """Клієнт для роботи з Bitrix24 REST API"""

    def __init__(self, base_url: str, settings: Optional[Settings] = None,
                 retry_delay: float = 1.0, session_factory=requests.Session):
        self.base_url = base_url if base_url.endswith('/') else base_url + '/'
        self.settings = settings or Settings()
        self.session_factory = session_factory
        self.headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json'
        }
        self._send = retry_on_failure(
            max_retries=self.settings.bitrix_max_retries,
            delay=retry_delay,
            exceptions=(TransientBitrixError,)
        )(self._send_once)

    def _send_once(self, method: str, params: Dict[str, Any]):
        session = self.session_factory()
        try:
            response = session.post(
                f"{self.base_url}{method}",
                json=params,
                headers=self.headers,
                timeout=self.settings.bitrix_timeout
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransientBitrixError(f"Помилка з'єднання з Bitrix24: {e}")
        finally:
            session.close()

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {'result': payload}

        if response.status_code in RETRY_STATUS_CODES or payload.get('error') in RETRY_ERROR_CODES:
            raise TransientBitrixError(
                f"Bitrix24 тимчасово недоступний ({response.status_code}): {payload.get('error', '')}"
            )
        return response.status_code, payload

    def make_request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Універсальна функція для запитів до Bitrix24 REST API
        """
        try:
            logger.info(f"Виконання запиту до Bitrix24: {method} {params or {}}")
            status_code, payload = self._send(method, params or {})
        except TransientBitrixError as e:
            return {'success': False, 'error': str(e)}
        except requests.exceptions.RequestException as e:
            logger.error(f"Помилка запиту до Bitrix24: {str(e)}")
            return {'success': False, 'error': f'Помилка запиту: {str(e)}'}

        if payload.get('error') or status_code >= 400:
            error = payload.get('error') or status_code
            description = payload.get('error_description', '')
            logger.error(f"Помилка Bitrix24 {method}: {status_code} - {error} {description}")
            return {
                'success': False,
                'status_code': status_code,
                'error': f'Bitrix24 помилка {error}: {description}'.strip()
            }

        logger.info(f"Успішна відповідь від Bitrix24: {method}")
        return {'success': True, 'data': payload.get('result')}

    def get_deal(self, deal_id: str) -> Dict[str, Any]:
        return self.make_request('crm.deal.get', {'id': deal_id})

    def get_deal_product_rows(self, deal_id: str) -> Dict[str, Any]:
        result = self.make_request('crm.deal.productrows.get', {'id': deal_id})
        if result['success'] and not isinstance(result['data'], list):
            result['data'] = []
        return result

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        """
        Дані товару з каталогу (назва, parentId для варіацій); None якщо недоступні
        """
        result = self.make_request('catalog.product.get', {'id': product_id})
        if not result['success'] or not isinstance(result['data'], dict):
            logger.warning(f"⚠️ Товар {product_id} не знайдено в каталозі: {result.get('error')}")
            return None
        return result['data'].get('product')

    def get_products(self, product_ids: Iterable[Any]) -> Dict[str, Optional[Dict[str, Any]]]:
        """
        Паралельне отримання товарів каталогу, кожен ID запитується один раз
        """
        unique_ids = sorted({
            str(product_id) for product_id in product_ids
            if product_id not in (None, '') and str(product_id) != '0'
        })
        if not unique_ids:
            return {}
        workers = min(self.settings.bitrix_max_workers, len(unique_ids))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            products = list(executor.map(self.get_product, unique_ids))
        return dict(zip(unique_ids, products))

    def get_smart_process_item(self, entity_type_id: int, item_id: int) -> Dict[str, Any]:
        result = self.make_request('crm.item.get', {'entityTypeId': entity_type_id, 'id': item_id})
        if result['success']:
            result['data'] = (result['data'] or {}).get('item') or {}
        return result

    def get_bonus_policy(self) -> Dict[str, Any]:
        """
        Правила зі смарт-процесів: товари без бонусів та група з власним лімітом знижки
        """
        no_bonus = self.get_smart_process_item(NO_BONUS_ENTITY_TYPE_ID, NO_BONUS_ITEM_ID)
        if not no_bonus['success']:
            return {'success': False, 'error': f"Не вдалося отримати товари без бонусів: {no_bonus['error']}"}

        max_discount = self.get_smart_process_item(MAX_DISCOUNT_ENTITY_TYPE_ID, MAX_DISCOUNT_ITEM_ID)
        if not max_discount['success']:
            return {'success': False, 'error': f"Не вдалося отримати ліміти знижок: {max_discount['error']}"}

        policy = BonusPolicy(
            no_bonus_ids=to_id_set(no_bonus['data'].get(NO_BONUS_PRODUCTS_FIELD)),
            max_discount_ids=to_id_set(max_discount['data'].get(MAX_DISCOUNT_PRODUCTS_FIELD)),
            max_discount_percent=parse_percent(max_discount['data'].get(MAX_DISCOUNT_PERCENT_FIELD)),
        )
        logger.info(f"Правила бонусів: без бонусів {len(policy.no_bonus_ids)} товарів, "
                    f"ліміт {policy.max_discount_percent} для {len(policy.max_discount_ids)} товарів")
        return {'success': True, 'policy': policy}

    def set_deal_product_rows(self, deal_id: str, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        return self.make_request('crm.deal.productrows.set', {'id': deal_id, 'rows': rows})

    def update_deal(self, deal_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        return self.make_request('crm.deal.update', {'id': deal_id, 'fields': fields})
