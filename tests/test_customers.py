from billing.customers import CustomerResolver
from billing.schemas import BillingAddress, BillingInfo


def test_creates_customer_when_email_is_unknown(gateway):
    resolved = CustomerResolver(gateway).resolve('owner@example.com', 7, name='Ana')

    customer = gateway.customers[resolved.customer_id]
    assert customer['email'] == 'owner@example.com'
    assert customer['name'] == 'Ana'
    assert customer['metadata'] == {'businessId': '7'}
    assert resolved.tax_id_ref is None


def test_reuses_customer_found_by_email(gateway):
    gateway.customers['cus_existing'] = {'email': 'owner@example.com'}
    info = BillingInfo(
        legal_name='Cafe Central SL',
        customer_type='company',
        phone='+34 600 000 000',
        address=BillingAddress(line1='Calle Mayor 1', city='Madrid', postal_code='28013'),
    )

    resolved = CustomerResolver(gateway).resolve('owner@example.com', 7, name='Ana', billing_info=info)

    assert resolved.customer_id == 'cus_existing'
    assert gateway.calls_named('create_customer') == []
    customer = gateway.customers['cus_existing']
    assert customer['name'] == 'Cafe Central SL'
    assert customer['metadata'] == {'businessId': '7', 'legalName': 'Cafe Central SL', 'customerType': 'company'}
    assert customer['address']['country'] == 'ES'


def test_repeated_resolution_converges_on_one_customer(gateway):
    resolver = CustomerResolver(gateway)

    first = resolver.resolve('owner@example.com', 7)
    second = resolver.resolve('owner@example.com', 7)

    assert first.customer_id == second.customer_id
    assert len(gateway.customers) == 1


def test_existing_tax_id_is_not_duplicated(gateway):
    gateway.customers['cus_existing'] = {'email': 'owner@example.com'}
    gateway.tax_ids['cus_existing'] = [{'id': 'txi_known', 'type': 'es_cif', 'value': 'B12345678'}]

    resolved = CustomerResolver(gateway).resolve(
        'owner@example.com', 7, billing_info=BillingInfo(tax_id='b 1234 5678')
    )

    assert resolved.tax_id_ref == 'txi_known'
    assert gateway.calls_named('create_tax_id') == []


def test_new_tax_id_is_attached(gateway):
    resolved = CustomerResolver(gateway).resolve('owner@example.com', 7, billing_info=BillingInfo(tax_id='B12345678'))

    _, args, kwargs = gateway.calls_named('create_tax_id')[0]
    assert args == (resolved.customer_id,)
    assert kwargs == {'type': 'es_cif', 'value': 'B12345678'}
    assert resolved.tax_id_ref is not None


def test_rejected_tax_id_does_not_block_resolution(gateway):
    gateway.fail('create_tax_id', message='Invalid value for es_cif.', code='tax_id_invalid')

    resolved = CustomerResolver(gateway).resolve('owner@example.com', 7, billing_info=BillingInfo(tax_id='nope'))

    assert resolved.customer_id in gateway.customers
    assert resolved.tax_id_ref is None
