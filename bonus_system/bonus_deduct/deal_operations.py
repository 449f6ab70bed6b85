"""
Бізнес-логіка операцій з угодами Bitrix24: списання бонусів та сума угоди
"""
import hmac
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .allocation import (
    ZERO,
    AllocationError,
    AllocationReport,
    InvalidBonusAmount,
    LineItem,
    allocate,
    format_allocation_note,
)
from .bitrix_client import BitrixClient, BonusPolicy
from .config import (
    ALLOCATION_NOTE_FIELD,
    BONUS_FIELD,
    DISCOUNT_TYPE_MONETARY,
    OPPORTUNITY_FIELD,
    Settings,
)
from .utils import create_response, normalize_webhook_url, parse_money, to_json_number
from .webhook_store import WebhookStore

logger = logging.getLogger(__name__)

# Поля рядка, які переносяться без змін при перезаписі товарів угоди
PRESERVED_ROW_FIELDS = ('MEASURE_CODE', 'MEASURE_NAME', 'SORT')


def _is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'y')
    return bool(value)


def _parent_id(product: Optional[Dict[str, Any]]) -> Optional[str]:
    parent = (product or {}).get('parentId')
    if isinstance(parent, dict):
        parent = parent.get('value')
    return str(parent) if parent not in (None, '', 0, '0') else None


class DealOperations:
    """Клас для виконання операцій з угодами"""

    def __init__(self, settings: Settings, webhook_store: Optional[WebhookStore] = None,
                 client_factory: Optional[Callable[[str], BitrixClient]] = None):
        self.settings = settings
        self._webhook_store = webhook_store
        self.client_factory = client_factory or (lambda base_url: BitrixClient(base_url, settings))

    @property
    def webhook_store(self) -> WebhookStore:
        if self._webhook_store is None:
            self._webhook_store = WebhookStore(self.settings)
        return self._webhook_store

    def get_client(self) -> Dict[str, Any]:
        """
        Клієнт Bitrix24: посилання з налаштувань або збережене через /init/

        Returns:
            dict: {'success': True, 'client': ...} або {'success': False, 'status_code': ..., 'error': ...}
        """
        base_url = self.settings.bitrix_webhook_url
        if not base_url:
            stored = self.webhook_store.load()
            if not stored['success']:
                return {'success': False, 'status_code': 502, 'error': stored['error']}
            base_url = stored['webhook_url']

        if not base_url:
            return {
                'success': False,
                'status_code': 503,
                'error': 'Сервіс не ініціалізовано: відсутнє посилання вебхука'
            }
        return {'success': True, 'client': self.client_factory(base_url)}

    def handle_init(self, body: Dict[str, Any], init_token: Optional[str] = None) -> Dict[str, Any]:
        """
        Збереження посилання вхідного вебхука Bitrix24
        """
        try:
            if self.settings.init_token:
                provided = init_token or body.get('token') or ''
                if not hmac.compare_digest(str(provided).encode(), self.settings.init_token.encode()):
                    logger.warning("⚠️ Спроба ініціалізації з невірним токеном")
                    return create_response(403, {
                        'error': 'Невірний токен ініціалізації',
                        'success': False
                    })

            bx_link = body.get('bx_link')
            if not bx_link:
                return create_response(400, {
                    'error': 'Необхідно надати посилання вхідного вебхука (bx_link)',
                    'success': False
                })

            webhook_url = normalize_webhook_url(bx_link)
            if not webhook_url:
                return create_response(400, {
                    'error': 'Некоректне посилання вебхука',
                    'success': False
                })

            save_result = self.webhook_store.save(webhook_url)
            if not save_result['success']:
                return create_response(502, {
                    'error': save_result['error'],
                    'success': False
                })

            return create_response(200, {
                'message': 'Система готова працювати з вашим Bitrix24',
                'success': True
            })

        except Exception as e:
            logger.error(f"Помилка ініціалізації: {str(e)}")
            return create_response(500, {
                'error': f'Внутрішня помилка сервера: {str(e)}',
                'success': False
            })

    def build_line_items(self, rows: List[Dict[str, Any]], products: Dict[str, Optional[Dict[str, Any]]],
                         policy: BonusPolicy) -> List[LineItem]:
        """
        Товарні рядки угоди -> позиції для розподілу бонусів
        """
        items = []
        for row in rows:
            product_id = str(row.get('PRODUCT_ID') or '')
            product = products.get(product_id)
            parent_id = _parent_id(product)
            unit_price = row.get('PRICE_NETTO')
            if unit_price in (None, ''):
                unit_price = row.get('PRICE')

            items.append(LineItem(
                product_id=product_id,
                name=(product or {}).get('name') or row.get('PRODUCT_NAME') or '',
                unit_price=parse_money(unit_price),
                quantity=parse_money(row.get('QUANTITY')),
                existing_discount_per_unit=parse_money(row.get('DISCOUNT_SUM')),
                eligible=not policy.is_excluded(product_id, parent_id),
                cap_percent=policy.cap_for(product_id, parent_id, self.settings.default_max_discount_percent),
            ))
        return items

    @staticmethod
    def build_product_rows(rows: List[Dict[str, Any]], report: AllocationReport) -> List[Dict[str, Any]]:
        """
        Рядки для crm.deal.productrows.set (знижка - сума за одиницю товару)
        """
        product_rows = []
        for row, line in zip(rows, report.lines):
            product_row = {
                'PRODUCT_ID': row.get('PRODUCT_ID'),
                'PRODUCT_NAME': row.get('PRODUCT_NAME') or line.name,
                'PRICE': to_json_number(line.unit_price),
                'QUANTITY': to_json_number(line.quantity),
                'DISCOUNT_TYPE_ID': DISCOUNT_TYPE_MONETARY,
                'DISCOUNT_SUM': to_json_number(line.discount_per_unit),
            }
            for field_name in PRESERVED_ROW_FIELDS:
                if row.get(field_name) not in (None, ''):
                    product_row[field_name] = row[field_name]
            product_rows.append(product_row)
        return product_rows

    def handle_bonus_deduct(self, deal_id: Optional[str], body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Списання бонусів угоди: розподіл суми бонусів знижками по товарних рядках
        """
        try:
            if not deal_id:
                return create_response(400, {
                    'error': 'Необхідно надати dealId',
                    'success': False
                })

            client_result = self.get_client()
            if not client_result['success']:
                return create_response(client_result['status_code'], {
                    'error': client_result['error'],
                    'success': False
                })
            client = client_result['client']

            deal_result = client.get_deal(deal_id)
            if not deal_result['success'] or not deal_result['data']:
                status = 404 if deal_result.get('status_code') in (400, 404) or deal_result['success'] else 502
                return create_response(status, {
                    'error': f"Угоду {deal_id} не знайдено: {deal_result.get('error', '')}".strip(),
                    'success': False
                })

            total_bonus = parse_money(deal_result['data'].get(BONUS_FIELD))
            if total_bonus <= 0:
                raise InvalidBonusAmount(f'Сума бонусів некоректна: {total_bonus}')

            rows_result = client.get_deal_product_rows(deal_id)
            if not rows_result['success']:
                return create_response(502, {
                    'error': f"Помилка отримання товарів угоди: {rows_result['error']}",
                    'success': False
                })
            rows = rows_result['data']
            if not rows:
                return create_response(404, {
                    'error': 'Товари не знайдено',
                    'success': False
                })

            policy_result = client.get_bonus_policy()
            if not policy_result['success']:
                return create_response(502, {
                    'error': policy_result['error'],
                    'success': False
                })

            products = client.get_products(row.get('PRODUCT_ID') for row in rows)
            items = self.build_line_items(rows, products, policy_result['policy'])

            logger.info(f"Угода {deal_id}: бонуси {total_bonus}, товарів {len(items)}, "
                        f"з них без бонусів {sum(1 for item in items if not item.eligible)}")

            report = allocate(total_bonus, items, self.settings.carry_forward_discount)
            product_rows = self.build_product_rows(rows, report)
            note = format_allocation_note(report)
            dry_run = _is_truthy(body.get('dry_run') or body.get('dryRun'))

            if not dry_run:
                rows_update = client.set_deal_product_rows(deal_id, product_rows)
                if not rows_update['success']:
                    return create_response(502, {
                        'error': f"Помилка оновлення товарів угоди: {rows_update['error']}",
                        'success': False
                    })

                deal_update = client.update_deal(deal_id, {ALLOCATION_NOTE_FIELD: note})
                if not deal_update['success']:
                    return create_response(502, {
                        'error': f"Товари оновлено, але не вдалося записати розподіл: {deal_update['error']}",
                        'success': False
                    })

            logger.info(f"✅ Бонуси угоди {deal_id} списано: {report.discount_sum} з {report.target_total}"
                        f"{' (dry run)' if dry_run else ''}")

            return create_response(200, {
                'message': 'Бонуси успішно списано',
                'success': True,
                'dealId': deal_id,
                'dryRun': dry_run,
                'totalBonus': total_bonus,
                'targetTotal': report.target_total,
                'discountSum': report.discount_sum,
                'shortfall': report.shortfall,
                'residual': report.residual,
                'warnings': report.warnings,
                'note': note,
                'rows': product_rows
            })

        except AllocationError as e:
            logger.warning(f"⚠️ Бонуси угоди {deal_id} не списано: {e}")
            return create_response(422, {
                'error': str(e),
                'errorType': type(e).__name__,
                'success': False
            })
        except Exception as e:
            logger.error(f"Помилка списання бонусів угоди {deal_id}: {str(e)}", exc_info=True)
            return create_response(500, {
                'error': f'Внутрішня помилка сервера: {str(e)}',
                'success': False
            })

    def handle_calculate_opportunity(self, deal_id: Optional[str]) -> Dict[str, Any]:
        """
        Сума угоди за товарними рядками: (ціна без знижки - знижка) * кількість
        """
        try:
            if not deal_id:
                return create_response(400, {
                    'error': 'Необхідно надати dealId',
                    'success': False
                })

            client_result = self.get_client()
            if not client_result['success']:
                return create_response(client_result['status_code'], {
                    'error': client_result['error'],
                    'success': False
                })
            client = client_result['client']

            rows_result = client.get_deal_product_rows(deal_id)
            if not rows_result['success']:
                return create_response(502, {
                    'error': f"Помилка отримання товарів угоди: {rows_result['error']}",
                    'success': False
                })
            if not rows_result['data']:
                return create_response(404, {
                    'error': 'Товари не знайдено',
                    'success': False
                })

            opportunity = calculate_opportunity(rows_result['data'])

            update_result = client.update_deal(deal_id, {OPPORTUNITY_FIELD: to_json_number(opportunity)})
            if not update_result['success']:
                return create_response(502, {
                    'error': f"Помилка оновлення суми угоди: {update_result['error']}",
                    'success': False
                })

            logger.info(f"✅ Сума угоди {deal_id}: {opportunity}")
            return create_response(200, {
                'message': 'Суму угоди успішно підраховано',
                'success': True,
                'dealId': deal_id,
                'opportunity': opportunity
            })

        except Exception as e:
            logger.error(f"Помилка підрахунку суми угоди {deal_id}: {str(e)}", exc_info=True)
            return create_response(500, {
                'error': f'Внутрішня помилка сервера: {str(e)}',
                'success': False
            })


def calculate_opportunity(rows: List[Dict[str, Any]]) -> Decimal:
    total = ZERO
    # Знижка віднімається від PRICE_NETTO, а не від PRICE: PRICE вже містить знижку
    for row in rows:
        price = row.get('PRICE_NETTO')
        discount = parse_money(row.get('DISCOUNT_SUM'))
        if price in (None, ''):
            # Без PRICE_NETTO ціна в рядку вже враховує знижку
            price, discount = row.get('PRICE'), ZERO
        total += (parse_money(price) - discount) * parse_money(row.get('QUANTITY'))
    return total.quantize(Decimal('0.01'))
