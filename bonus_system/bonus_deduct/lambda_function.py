"""
Основна Lambda функція для списання бонусів в угодах Bitrix24
"""
import json
import logging
import sys

from .config import load_settings
from .deal_operations import DealOperations
from .utils import create_response, extract_deal_id, get_header, parse_event

# --- Налаштування логера ---
logger = logging.getLogger()
if logger.handlers:
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
logging.basicConfig(stream=sys.stdout, level=logging.INFO)

# --- Налаштування завантажуються один раз при холодному старті ---
settings = load_settings()
_level = logging.getLevelName(settings.log_level)
logger.setLevel(_level if isinstance(_level, int) else logging.INFO)


def lambda_handler(event, context):
    """
    Основна функція Lambda для обробки вебхуків від Bitrix24
    """
    try:
        logger.info(f"Отримано запит: {json.dumps(event, ensure_ascii=False, default=str)}")

        method, path, body = parse_event(event)

        # Обробка OPTIONS запиту для CORS preflight
        if method == 'OPTIONS':
            return create_response(200, {'message': 'CORS preflight successful'})

        if method != 'POST':
            return create_response(405, {
                'error': 'Метод не підтримується.',
                'success': False
            })

        deal_ops = DealOperations(settings)
        query = event.get('queryStringParameters') or {}
        normalized_path = path.rstrip('/')

        # Маршрутизація запитів
        if normalized_path.endswith('/init'):
            return deal_ops.handle_init(body, get_header(event, 'X-Init-Token'))

        elif '/bonus_deduct' in normalized_path:
            return deal_ops.handle_bonus_deduct(extract_deal_id(body, path, query), body)

        elif '/calculate_opportunity' in normalized_path:
            return deal_ops.handle_calculate_opportunity(extract_deal_id(body, path, query))

        else:
            return create_response(405, {
                'error': 'Метод не підтримується.',
                'success': False
            })

    except Exception as e:
        logger.error(f"Помилка обробки запиту: {str(e)}")
        return create_response(500, {
            'error': f'Внутрішня помилка сервера: {str(e)}',
            'success': False
        })
