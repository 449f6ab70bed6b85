import json
from decimal import Decimal

import pytest
from botocore.exceptions import EndpointConnectionError

from bonus_system.bonus_deduct.bitrix_client import BonusPolicy
from bonus_system.bonus_deduct.config import ALLOCATION_NOTE_FIELD, BONUS_FIELD, Settings
from bonus_system.bonus_deduct.deal_operations import DealOperations, calculate_opportunity
from bonus_system.bonus_deduct.webhook_store import WebhookStore

WEBHOOK_URL = 'https://b24.example/rest/1/secret/'


class FakeClient:
    def __init__(self, deal=None, rows=None, products=None, policy=None):
        self.deal = deal
        self.rows = rows or []
        self.products = products or {}
        self.policy = policy or BonusPolicy()
        self.deal_result = None
        self.write_result = {'success': True, 'data': True}
        self.written_rows = []
        self.deal_updates = []

    def get_deal(self, deal_id):
        if self.deal_result is not None:
            return self.deal_result
        return {'success': True, 'data': self.deal}

    def get_deal_product_rows(self, deal_id):
        return {'success': True, 'data': self.rows}

    def get_bonus_policy(self):
        return {'success': True, 'policy': self.policy}

    def get_products(self, product_ids):
        return {str(product_id): self.products.get(str(product_id)) for product_id in product_ids}

    def set_deal_product_rows(self, deal_id, rows):
        self.written_rows.append((deal_id, rows))
        return self.write_result

    def update_deal(self, deal_id, fields):
        self.deal_updates.append((deal_id, fields))
        return self.write_result


class FakeStore:
    def __init__(self, webhook_url=None, load_error=None):
        self.webhook_url = webhook_url
        self.load_error = load_error
        self.saved = []

    def save(self, webhook_url):
        self.saved.append(webhook_url)
        return {'success': True}

    def load(self):
        if self.load_error:
            return {'success': False, 'error': self.load_error}
        return {'success': True, 'webhook_url': self.webhook_url}


def _row(product_id, name, price, quantity=1, discount=0):
    return {
        'PRODUCT_ID': product_id,
        'PRODUCT_NAME': name,
        'PRICE': price - discount,
        'PRICE_NETTO': price,
        'QUANTITY': quantity,
        'DISCOUNT_SUM': discount,
        'MEASURE_CODE': 796,
    }


def _body(response):
    return json.loads(response['body'])


@pytest.fixture
def client():
    return FakeClient(
        deal={'ID': '42', BONUS_FIELD: '450|RUB'},
        rows=[_row(1, 'Чай', 1000), _row(2, 'Кава', 2000)],
        products={'1': {'id': 1, 'name': 'Чай'}, '2': {'id': 2, 'name': 'Кава', 'parentId': {'value': 20}}},
    )


def make_operations(client, settings=None, store=None):
    settings = settings or Settings(bitrix_webhook_url=WEBHOOK_URL)
    return DealOperations(settings, webhook_store=store or FakeStore(), client_factory=lambda url: client)


def test_bonus_deduct_writes_discounted_rows_and_note(client):
    response = make_operations(client).handle_bonus_deduct('42', {})

    body = _body(response)
    assert response['statusCode'] == 200
    assert body['success']
    assert body['discountSum'] == 450
    assert body['residual'] == 0

    deal_id, rows = client.written_rows[0]
    assert deal_id == '42'
    assert rows == [
        {'PRODUCT_ID': 1, 'PRODUCT_NAME': 'Чай', 'PRICE': 850, 'QUANTITY': 1,
         'DISCOUNT_TYPE_ID': 1, 'DISCOUNT_SUM': 150, 'MEASURE_CODE': 796},
        {'PRODUCT_ID': 2, 'PRODUCT_NAME': 'Кава', 'PRICE': 1700, 'QUANTITY': 1,
         'DISCOUNT_TYPE_ID': 1, 'DISCOUNT_SUM': 300, 'MEASURE_CODE': 796},
    ]
    assert client.deal_updates == [('42', {ALLOCATION_NOTE_FIELD: ['1 Чай - 150', '2 Кава - 300']})]


def test_product_excluded_through_parent_gets_no_bonus(client):
    client.deal[BONUS_FIELD] = 100
    client.policy = BonusPolicy(no_bonus_ids={'20'})

    response = make_operations(client).handle_bonus_deduct('42', {})

    assert response['statusCode'] == 200
    _, rows = client.written_rows[0]
    assert rows[0]['DISCOUNT_SUM'] == 100
    assert rows[1]['DISCOUNT_SUM'] == 0
    assert rows[1]['PRICE'] == 2000


def test_max_discount_group_raises_cap(client):
    client.deal[BONUS_FIELD] = 400
    client.rows = [_row(1, 'Чай', 1000)]
    client.policy = BonusPolicy(max_discount_ids={'1'}, max_discount_percent=Decimal('0.5'))

    body = _body(make_operations(client).handle_bonus_deduct('42', {}))

    assert body['rows'][0]['DISCOUNT_SUM'] == 400
    assert body['shortfall'] == 0


def test_default_cap_limits_discount_and_reports_shortfall(client):
    client.deal[BONUS_FIELD] = 400
    client.rows = [_row(1, 'Чай', 1000)]

    body = _body(make_operations(client).handle_bonus_deduct('42', {}))

    assert body['rows'][0]['DISCOUNT_SUM'] == 150
    assert body['shortfall'] == 250
    assert body['warnings']


def test_dry_run_skips_write_back(client):
    body = _body(make_operations(client).handle_bonus_deduct('42', {'dry_run': 'true'}))

    assert body['dryRun'] is True
    assert body['discountSum'] == 450
    assert client.written_rows == []
    assert client.deal_updates == []


def test_zero_bonus_is_rejected_without_writes(client):
    client.deal[BONUS_FIELD] = '0|RUB'

    response = make_operations(client).handle_bonus_deduct('42', {})

    assert response['statusCode'] == 422
    assert _body(response)['errorType'] == 'InvalidBonusAmount'
    assert client.written_rows == []


def test_all_products_excluded_is_rejected(client):
    client.policy = BonusPolicy(no_bonus_ids={'1', '2'})

    response = make_operations(client).handle_bonus_deduct('42', {})

    assert response['statusCode'] == 422
    assert _body(response)['errorType'] == 'NoEligibleItems'
    assert client.written_rows == []


def test_missing_deal_returns_404(client):
    client.deal_result = {'success': False, 'status_code': 400, 'error': 'Bitrix24 помилка NOT_FOUND: Not found'}

    response = make_operations(client).handle_bonus_deduct('42', {})

    assert response['statusCode'] == 404


def test_deal_without_rows_returns_404(client):
    client.rows = []

    response = make_operations(client).handle_bonus_deduct('42', {})

    assert response['statusCode'] == 404


def test_missing_deal_id_returns_400(client):
    response = make_operations(client).handle_bonus_deduct(None, {})

    assert response['statusCode'] == 400


def test_write_failure_returns_502(client):
    client.write_result = {'success': False, 'error': 'Bitrix24 помилка ACCESS_DENIED:'}

    response = make_operations(client).handle_bonus_deduct('42', {})

    assert response['statusCode'] == 502
    assert 'ACCESS_DENIED' in _body(response)['error']


def test_uninitialized_service_returns_503(client):
    operations = make_operations(client, settings=Settings(), store=FakeStore(webhook_url=None))

    response = operations.handle_bonus_deduct('42', {})

    assert response['statusCode'] == 503


def test_webhook_store_failure_returns_502(client):
    store = FakeStore(load_error='Помилка S3: AccessDenied')
    operations = make_operations(client, settings=Settings(), store=store)

    deduct = operations.handle_bonus_deduct('42', {})
    opportunity = operations.handle_calculate_opportunity('42')

    assert deduct['statusCode'] == 502
    assert opportunity['statusCode'] == 502
    assert 'AccessDenied' in _body(deduct)['error']
    assert client.written_rows == []


class UnreachableS3:
    def get_object(self, **kwargs):
        raise EndpointConnectionError(endpoint_url='https://s3.eu-north-1.amazonaws.com')


def test_unreachable_s3_returns_502(client):
    store = WebhookStore(Settings(), s3_client=UnreachableS3())
    operations = make_operations(client, settings=Settings(), store=store)

    response = operations.handle_bonus_deduct('7', {})

    assert response['statusCode'] == 502
    assert _body(response)['error'].startswith('Помилка S3')


def test_stored_webhook_is_used_when_not_configured(client):
    urls = []
    operations = DealOperations(
        Settings(),
        webhook_store=FakeStore(webhook_url=WEBHOOK_URL),
        client_factory=lambda url: urls.append(url) or client,
    )

    response = operations.handle_bonus_deduct('42', {})

    assert response['statusCode'] == 200
    assert urls == [WEBHOOK_URL]


def test_carry_forward_keeps_manual_discount_on_excluded_row(client):
    client.deal[BONUS_FIELD] = 100
    client.rows = [_row(1, 'Чай', 1000), _row(2, 'Кава', 2000, discount=50)]
    client.policy = BonusPolicy(no_bonus_ids={'2'})

    body = _body(make_operations(client).handle_bonus_deduct('42', {}))

    assert body['rows'][0]['DISCOUNT_SUM'] == 100
    assert body['rows'][1]['DISCOUNT_SUM'] == 50
    assert body['rows'][1]['PRICE'] == 1950


def test_reset_policy_clears_manual_discount(client):
    client.deal[BONUS_FIELD] = 100
    client.rows = [_row(1, 'Чай', 1000), _row(2, 'Кава', 2000, discount=50)]
    client.policy = BonusPolicy(no_bonus_ids={'2'})
    settings = Settings(bitrix_webhook_url=WEBHOOK_URL, carry_forward_discount=False)

    body = _body(make_operations(client, settings=settings).handle_bonus_deduct('42', {}))

    assert body['rows'][1]['DISCOUNT_SUM'] == 0
    assert body['rows'][1]['PRICE'] == 2000


def test_calculate_opportunity_updates_deal(client):
    client.rows = [_row(1, 'Чай', 1000, quantity=2, discount=150), {'PRICE': '99.5', 'QUANTITY': 1}]

    response = make_operations(client).handle_calculate_opportunity('42')

    body = _body(response)
    assert response['statusCode'] == 200
    assert body['opportunity'] == 1799.5
    assert client.deal_updates == [('42', {'OPPORTUNITY': 1799.5})]


def test_calculate_opportunity_without_rows_returns_404(client):
    client.rows = []

    response = make_operations(client).handle_calculate_opportunity('42')

    assert response['statusCode'] == 404


def test_calculate_opportunity_sums_net_price_minus_discount():
    rows = [
        {'PRICE_NETTO': '100', 'DISCOUNT_SUM': '10', 'QUANTITY': '3'},
        {'PRICE_NETTO': '50.50', 'DISCOUNT_SUM': None, 'QUANTITY': '2'},
    ]

    assert calculate_opportunity(rows) == Decimal('371.00')


def test_init_saves_normalized_link():
    store = FakeStore()
    operations = DealOperations(Settings(), webhook_store=store)

    response = operations.handle_init({'bx_link': 'https://b24.example/rest/1/secret'})

    assert response['statusCode'] == 200
    assert store.saved == [WEBHOOK_URL]


@pytest.mark.parametrize('body, status', [
    ({}, 400),
    ({'bx_link': 'not a link'}, 400),
])
def test_init_rejects_bad_input(body, status):
    store = FakeStore()

    response = DealOperations(Settings(), webhook_store=store).handle_init(body)

    assert response['statusCode'] == status
    assert store.saved == []


def test_init_requires_token_when_configured():
    store = FakeStore()
    operations = DealOperations(Settings(init_token='s3cret'), webhook_store=store)

    denied = operations.handle_init({'bx_link': WEBHOOK_URL, 'token': 'wrong'})
    allowed = operations.handle_init({'bx_link': WEBHOOK_URL}, init_token='s3cret')

    assert denied['statusCode'] == 403
    assert allowed['statusCode'] == 200
    assert store.saved == [WEBHOOK_URL]
