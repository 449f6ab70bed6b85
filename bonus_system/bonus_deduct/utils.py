"""
Допоміжні функції
"""
import base64
import json
import re
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Set, Tuple
from urllib.parse import parse_qs

from .allocation import ZERO, to_decimal


def create_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Створення HTTP відповіді
    """
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Allow-Methods': 'POST, OPTIONS',
            'Access-Control-Allow-Headers': 'Content-Type, Authorization, X-Init-Token'
        },
        'body': json.dumps(body, ensure_ascii=False, default=_json_default)
    }


def to_json_number(value: Decimal) -> Any:
    """Decimal -> int або float для JSON"""
    return int(value) if value == value.to_integral_value() else float(value)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return to_json_number(value)
    raise TypeError(f'Object of type {type(value).__name__} is not JSON serializable')


def _decode_body(event: Dict[str, Any]) -> Dict[str, Any]:
    raw = event.get('body')
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    if event.get('isBase64Encoded'):
        raw = base64.b64decode(raw).decode('utf-8')

    content_type = ''
    for name, value in (event.get('headers') or {}).items():
        if name.lower() == 'content-type':
            content_type = value or ''

    # Вихідні вебхуки Bitrix24 надсилають form-urlencoded
    if 'application/x-www-form-urlencoded' in content_type or not raw.lstrip().startswith(('{', '[')):
        return {key: values[-1] for key, values in parse_qs(raw, keep_blank_values=True).items()}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def parse_event(event: Dict[str, Any]) -> Tuple[str, str, Dict[str, Any]]:
    """
    Парсинг Lambda event для отримання методу, шляху та тіла запиту

    Returns:
        tuple: (method, path, body)
    """
    # Визначаємо тип запиту для різних форматів event
    if 'requestContext' in event and 'http' in event['requestContext']:
        # Формат event версії 2.0 (HTTP API)
        method = event['requestContext']['http']['method']
        path = event.get('rawPath', '/')
    else:
        # Формат event версії 1.0 (REST API)
        method = event.get('httpMethod', 'POST')
        path = event.get('path', '/')

    return method.upper(), path, _decode_body(event)


def extract_deal_id(body: Dict[str, Any], path: str, query: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    ID угоди: з тіла (dealId), потім з шляху (/bonus_deduct/{ID}), потім з query (?ID=)
    """
    deal_id = body.get('dealId')
    if not deal_id:
        # Бізнес-процес Bitrix24 передає document_id[2] = "DEAL_123"
        document_id = str(body.get('document_id[2]') or '')
        deal_id = document_id[len('DEAL_'):] if document_id.startswith('DEAL_') else None
    if not deal_id:
        match = re.search(r'/(?:bonus_deduct|calculate_opportunity)/([^/]+)/?$', path)
        deal_id = match.group(1) if match else None
    if not deal_id and query:
        deal_id = query.get('ID') or query.get('id')
    return str(deal_id).strip() if deal_id else None


def get_header(event: Dict[str, Any], name: str) -> Optional[str]:
    for key, value in (event.get('headers') or {}).items():
        if key.lower() == name.lower():
            return value
    return None


def parse_money(value: Any) -> Decimal:
    """
    Сума з поля Bitrix24: число або грошове поле виду "100|RUB"
    """
    if isinstance(value, str) and '|' in value:
        value = value.split('|', 1)[0]
    return to_decimal(value, ZERO)


def normalize_webhook_url(link: str) -> Optional[str]:
    """
    Базове посилання вхідного вебхука завжди закінчується на "/"
    """
    link = (link or '').strip()
    if not re.match(r'^https?://[^/\s]+/\S*$', link + '/'):
        return None
    return link if link.endswith('/') else link + '/'


def to_id_set(values: Any) -> Set[str]:
    """
    Множинне поле смарт-процесу (список або одне значення) -> множина ID рядками
    """
    if values is None or values == '':
        return set()
    if not isinstance(values, (list, tuple, set)):
        values = [values]
    return {str(value).strip() for value in _flatten(values) if str(value).strip()}


def _flatten(values: Iterable[Any]) -> Iterable[Any]:
    for value in values:
        if isinstance(value, (list, tuple)):
            yield from _flatten(value)
        elif value is not None:
            yield value
