from decimal import Decimal

import pytest
from pydantic import ValidationError

from billing.catalog import create_plan, deactivate_plan, sync_all_plans, update_plan
from billing.exceptions import (
    PlanAlreadyExistsError,
    PlanInUseError,
    PlanNotFoundError,
    PlanValidationError,
    RemoteBillingError,
)
from billing.plan_sync import TRIAL_PRICE_SENTINEL, PlanSynchronizer
from billing.plans import get_plan_by_key, list_plans, seed_plan_catalogue
from billing.schemas import PlanCreate, PlanUpdate


def _create(session, gateway, **fields):
    values = dict(key='growth', name='Growth', recurring_price=Decimal('39.00'))
    values.update(fields)
    return create_plan(session, PlanSynchronizer(gateway), PlanCreate(**values))


def test_create_plan_persists_remote_identifiers(session, gateway):
    plan = _create(session, gateway, interval='year')

    assert plan.id is not None
    assert plan.stripe_product_id in gateway.products
    assert gateway.prices[plan.stripe_price_id]['recurring']['interval'] == 'year'


def test_create_plan_rolls_back_when_sync_fails(session, gateway):
    gateway.fail('create_product')

    with pytest.raises(RemoteBillingError):
        _create(session, gateway)

    assert get_plan_by_key(session, 'growth') is None


def test_duplicate_key_is_rejected(session, gateway):
    _create(session, gateway)

    with pytest.raises(PlanAlreadyExistsError):
        _create(session, gateway)


def test_original_price_must_exceed_recurring_price():
    with pytest.raises(ValidationError):
        PlanCreate(key='growth', name='Growth', recurring_price=Decimal('39.00'), original_price=Decimal('39.00'))


def test_update_rejects_invalid_merged_plan_before_remote_calls(session, gateway):
    _create(session, gateway)
    gateway.calls.clear()

    with pytest.raises(PlanValidationError):
        update_plan(session, PlanSynchronizer(gateway), 'growth', PlanUpdate(original_price=Decimal('20.00')))

    assert gateway.calls == []


def test_update_without_pricing_change_keeps_price(session, gateway):
    plan = _create(session, gateway)
    original_price_id = plan.stripe_price_id
    gateway.calls.clear()

    updated = update_plan(session, PlanSynchronizer(gateway), 'growth', PlanUpdate(name='Growth Plus', popular=True))

    assert updated.name == 'Growth Plus'
    assert updated.stripe_price_id == original_price_id
    assert gateway.calls_named('create_price') == []
    assert gateway.products[updated.stripe_product_id]['name'] == 'Growth Plus'


def test_update_with_pricing_change_mints_new_price(session, gateway):
    plan = _create(session, gateway)
    original_price_id = plan.stripe_price_id

    updated = update_plan(session, PlanSynchronizer(gateway), 'growth', PlanUpdate(recurring_price=Decimal('45.00')))

    assert updated.stripe_price_id != original_price_id
    assert gateway.prices[updated.stripe_price_id]['unit_amount'] == 4500
    assert gateway.prices[original_price_id]['active'] is False


def test_update_is_not_committed_when_sync_fails(session, gateway):
    _create(session, gateway)
    gateway.fail('create_price')

    with pytest.raises(RemoteBillingError):
        update_plan(session, PlanSynchronizer(gateway), 'growth', PlanUpdate(recurring_price=Decimal('45.00')))

    session.expire_all()
    assert get_plan_by_key(session, 'growth').recurring_price == Decimal('39.00')


def test_update_unknown_plan(session, gateway):
    with pytest.raises(PlanNotFoundError):
        update_plan(session, PlanSynchronizer(gateway), 'missing', PlanUpdate(name='x'))


def test_deactivate_is_blocked_while_plan_is_in_use(session, gateway, business):
    _create(session, gateway)
    business.subscription_plan = 'growth'
    business.subscription_status = 'active'
    business.active = True
    session.commit()

    with pytest.raises(PlanInUseError):
        deactivate_plan(session, gateway, 'growth')

    assert get_plan_by_key(session, 'growth').active is True


def test_deactivate_archives_remote_objects(session, gateway):
    plan = _create(session, gateway)

    deactivated = deactivate_plan(session, gateway, 'growth')

    assert deactivated.active is False
    assert gateway.products[plan.stripe_product_id]['active'] is False
    assert gateway.prices[plan.stripe_price_id]['active'] is False
    assert [p.key for p in list_plans(session)] == []


def test_deactivate_survives_remote_archive_failure(session, gateway):
    _create(session, gateway)
    gateway.fail('update_product')

    assert deactivate_plan(session, gateway, 'growth').active is False


def test_sync_all_reports_each_plan(session, gateway):
    seed_plan_catalogue(session)

    results = sync_all_plans(session, PlanSynchronizer(gateway))

    assert [item['key'] for item in results] == ['basic', 'premium']
    assert all(item['status'] == 'synced' for item in results)
    assert get_plan_by_key(session, 'trial').stripe_price_id is None


def test_sync_all_continues_after_a_failure(session, gateway):
    seed_plan_catalogue(session)
    gateway.fail('create_product', code='api_error')

    results = sync_all_plans(session, PlanSynchronizer(gateway))

    assert {item['status'] for item in results} == {'error'}
    assert results[0]['code'] == 'api_error'


def test_seed_is_idempotent(session):
    first = seed_plan_catalogue(session)
    second = seed_plan_catalogue(session)

    assert [plan.id for plan in first] == [plan.id for plan in second]
    assert [plan.key for plan in list_plans(session)] == ['trial', 'basic', 'premium']


def test_trial_plan_sync_uses_sentinels(session, gateway, make_plan):
    plan = make_plan('trial', '0.00', trial_days=7)

    result = PlanSynchronizer(gateway).sync(plan)

    assert result.price_id == TRIAL_PRICE_SENTINEL


@pytest.mark.parametrize('interval, count', [('quarter', 3), ('semester', 6)])
def test_created_price_carries_interval_multiplier(session, gateway, interval, count):
    plan = _create(session, gateway, interval=interval)

    [(_, _, kwargs)] = gateway.calls_named('create_price')
    assert kwargs['recurring']['interval'] == 'month'
    assert kwargs['recurring']['interval_count'] == count
    assert gateway.prices[plan.stripe_price_id]['recurring']['interval_count'] == count


def test_inactive_plan_is_created_without_remote_calls(session, gateway):
    plan = _create(session, gateway, key='gold', active=False)

    assert plan.id is not None
    assert plan.active is False
    assert plan.stripe_product_id is None
    assert plan.stripe_price_id is None
    assert gateway.calls == []


def test_editing_inactive_plan_stays_local(session, gateway):
    _create(session, gateway, key='gold', active=False)

    updated = update_plan(session, PlanSynchronizer(gateway), 'gold', PlanUpdate(recurring_price=Decimal('49.00')))

    assert updated.recurring_price == Decimal('49.00')
    assert gateway.calls == []


def test_activating_plan_syncs_it(session, gateway):
    _create(session, gateway, key='gold', active=False)

    updated = update_plan(session, PlanSynchronizer(gateway), 'gold', PlanUpdate(active=True))

    assert updated.stripe_product_id in gateway.products
    assert gateway.prices[updated.stripe_price_id]['active'] is True


def test_reactivated_plan_gets_a_fresh_price(session, gateway):
    plan = _create(session, gateway)
    archived_price_id = plan.stripe_price_id
    deactivate_plan(session, gateway, 'growth')
    gateway.calls.clear()

    updated = update_plan(session, PlanSynchronizer(gateway), 'growth', PlanUpdate(active=True))

    assert updated.stripe_price_id != archived_price_id
    assert gateway.prices[updated.stripe_price_id]['active'] is True
    assert len(gateway.calls_named('create_price')) == 1
