import base64
import json
from decimal import Decimal

from bonus_system.bonus_deduct.utils import (
    create_response,
    extract_deal_id,
    get_header,
    normalize_webhook_url,
    parse_event,
    parse_money,
    to_id_set,
)


def test_create_response_serializes_decimals():
    response = create_response(200, {'whole': Decimal('450.00'), 'part': Decimal('12.5'), 'text': 'Чай'})

    assert response['statusCode'] == 200
    assert response['headers']['Access-Control-Allow-Origin'] == '*'
    assert json.loads(response['body']) == {'whole': 450, 'part': 12.5, 'text': 'Чай'}


def test_parse_event_rest_api_json_body():
    event = {'httpMethod': 'post', 'path': '/qg_webhook/bonus_deduct/42', 'body': '{"dry_run": true}'}

    method, path, body = parse_event(event)

    assert method == 'POST'
    assert path == '/qg_webhook/bonus_deduct/42'
    assert body == {'dry_run': True}


def test_parse_event_http_api_form_body():
    event = {
        'requestContext': {'http': {'method': 'POST'}},
        'rawPath': '/qg_webhook/bonus_deduct/',
        'headers': {'content-type': 'application/x-www-form-urlencoded'},
        'body': 'dealId=17&document_id%5B2%5D=DEAL_17',
    }

    method, path, body = parse_event(event)

    assert method == 'POST'
    assert body['dealId'] == '17'
    assert body['document_id[2]'] == 'DEAL_17'


def test_parse_event_base64_body():
    raw = base64.b64encode(json.dumps({'bx_link': 'https://b24.example/rest/1/abc/'}).encode()).decode()
    event = {'httpMethod': 'POST', 'path': '/qg_webhook/init/', 'body': raw, 'isBase64Encoded': True}

    _, _, body = parse_event(event)

    assert body == {'bx_link': 'https://b24.example/rest/1/abc/'}


def test_extract_deal_id_priority():
    assert extract_deal_id({'dealId': 5}, '/qg_webhook/bonus_deduct/9', {'ID': '1'}) == '5'
    assert extract_deal_id({'document_id[2]': 'DEAL_77'}, '/qg_webhook/bonus_deduct/', {}) == '77'
    assert extract_deal_id({}, '/qg_webhook/bonus_deduct/9', {'ID': '1'}) == '9'
    assert extract_deal_id({}, '/qg_webhook/calculate_opportunity/', {'ID': '1'}) == '1'
    assert extract_deal_id({}, '/qg_webhook/calculate_opportunity/', None) is None


def test_get_header_is_case_insensitive():
    assert get_header({'headers': {'x-init-token': 'secret'}}, 'X-Init-Token') == 'secret'
    assert get_header({}, 'X-Init-Token') is None


def test_parse_money_handles_currency_suffix():
    assert parse_money('1500|RUB') == Decimal('1500')
    assert parse_money('99.90') == Decimal('99.90')
    assert parse_money(None) == 0
    assert parse_money('') == 0


def test_normalize_webhook_url():
    assert normalize_webhook_url('https://b24.example/rest/1/abc') == 'https://b24.example/rest/1/abc/'
    assert normalize_webhook_url(' https://b24.example/rest/1/abc/ ') == 'https://b24.example/rest/1/abc/'
    assert normalize_webhook_url('ftp://b24.example/rest/') is None
    assert normalize_webhook_url('') is None


def test_to_id_set_flattens_smart_process_values():
    assert to_id_set([1, '2', None, ['3']]) == {'1', '2', '3'}
    assert to_id_set('5') == {'5'}
    assert to_id_set(None) == set()
    assert to_id_set('') == set()
