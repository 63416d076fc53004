# Overview: Pytest coverage for the in-process change feed.

"""
Realtime subscription tests.

Verifies:
- Subscribers receive INSERT/UPDATE/DELETE only after commit
- Rolled-back work is never delivered
- Event and column filters narrow delivery
- unsubscribe() stops delivery
"""

import pytest

from pharmapos.models import Product
from pharmapos.services import products_service, realtime_service, sales_service
from pharmapos.services.realtime_service import ChangeEvent, parse_filter
from pharmapos.services.sales_service import SaleError
from pharmapos.services.tenant_service import Scope


@pytest.fixture
def subscribe(app, tenant_a):
    """Subscribe to a table for tenant A; every channel is closed after the test."""
    channels = []

    def _subscribe(table, scope=None, **kwargs):
        received = []
        scope = scope or Scope(tenant_id=tenant_a.id, branch_id=None)
        channel = realtime_service.subscription(table, scope, received.append, **kwargs)
        channels.append(channel)
        return channel, received

    yield _subscribe

    for channel in channels:
        channel.unsubscribe()


class TestDelivery:
    def test_insert_delivered_after_commit(self, db_session, scope_a, subscribe):
        _channel, received = subscribe('products')

        products_service.create_product(scope_a, {'name': 'Cetirizine 10mg', 'price': 300}, commit=False)
        db_session.flush()
        assert received == []

        db_session.commit()
        assert len(received) == 1
        change = received[0]
        assert isinstance(change, ChangeEvent)
        assert change.table == 'products'
        assert change.event == 'INSERT'
        assert change.record['name'] == 'Cetirizine 10mg'
        assert change.tenant_id == scope_a.tenant_id
        assert change.branch_id == scope_a.branch_id

    def test_rollback_is_not_delivered(self, db_session, scope_a, subscribe):
        _channel, received = subscribe('products')

        products_service.create_product(scope_a, {'name': 'Cetirizine 10mg', 'price': 300}, commit=False)
        db_session.flush()
        db_session.rollback()
        db_session.commit()

        assert received == []

    def test_failed_sale_is_not_delivered(self, db_session, scope_a, product_a, subscribe):
        _sales, sale_events = subscribe('sales')
        _products, product_events = subscribe('products')

        draft = sales_service.draft_from_payload(
            {'customer_id': 9999, 'items': [{'product_id': product_a.id, 'quantity': 1}]}, scope_a
        )
        with pytest.raises(SaleError):
            sales_service.save_draft(draft, scope_a)

        assert sale_events == []
        assert product_events == []

    def test_stock_adjustment_is_delivered(self, db_session, scope_a, product_a, subscribe):
        _channel, received = subscribe('products', event='UPDATE')

        products_service.adjust_stock(product_a.id, -4, scope_a)
        db_session.commit()

        assert [change.record['quantity'] for change in received] == [6]

    def test_update_and_delete(self, db_session, product_a, subscribe):
        _channel, received = subscribe('products')
        product_id = product_a.id

        product_a.price = 1200
        db_session.commit()

        db_session.refresh(product_a)
        db_session.delete(product_a)
        db_session.commit()

        assert [change.event for change in received] == ['UPDATE', 'DELETE']
        assert received[0].record['price'] == 1200
        assert received[1].record['id'] == product_id
        assert db_session.get(Product, product_id) is None

    def test_hidden_columns_are_not_published(self, db_session, tenant_a, password_hash, subscribe):
        from pharmapos.models import User
        _channel, received = subscribe('users')

        db_session.add(User(tenant_id=tenant_a.id, email='new@city.test', password_hash=password_hash,
                            role='owner', first_name='New', last_name='Owner'))
        db_session.commit()

        assert len(received) == 1
        assert 'password_hash' not in received[0].record
        assert received[0].record['email'] == 'new@city.test'


class TestFilters:
    def test_event_filter(self, db_session, scope_a, product_a, subscribe):
        _channel, received = subscribe('products', event='DELETE')

        products_service.update_product(product_a.id, scope_a, {'price': 1100})
        assert received == []

        products_service.delete_product(product_a.id, scope_a)
        assert [change.event for change in received] == ['DELETE']

    def test_column_filter_string(self, db_session, branch_a, branch_a2, subscribe):
        _channel, received = subscribe('products', filter=f'branch_id=eq.{branch_a2.id}')

        db_session.add(Product(tenant_id=branch_a.tenant_id, branch_id=branch_a.id, name='A', price=1))
        db_session.add(Product(tenant_id=branch_a2.tenant_id, branch_id=branch_a2.id, name='B', price=1))
        db_session.commit()

        assert [change.record['name'] for change in received] == ['B']

    def test_column_filter_dict(self, db_session, branch_a, subscribe):
        _channel, received = subscribe('products', filter={'name': 'Zinc'})

        db_session.add(Product(tenant_id=branch_a.tenant_id, branch_id=branch_a.id, name='Zinc', price=1))
        db_session.add(Product(tenant_id=branch_a.tenant_id, branch_id=branch_a.id, name='Iron', price=1))
        db_session.commit()

        assert [change.record['name'] for change in received] == ['Zinc']

    def test_other_tables_are_ignored(self, db_session, scope_a, subscribe):
        _channel, received = subscribe('customers')
        products_service.create_product(scope_a, {'name': 'Cetirizine 10mg', 'price': 300})
        assert received == []

    def test_parse_filter(self):
        assert parse_filter(None) == {}
        assert parse_filter('status=eq.active') == {'status': 'active'}
        with pytest.raises(ValueError):
            parse_filter('price=gt.10')

    def test_unknown_event_rejected(self, app):
        with pytest.raises(ValueError):
            realtime_service.subscription('products', Scope(tenant_id=1, branch_id=None), lambda change: None,
                                          event='TRUNCATE')


class TestChannels:
    def test_unsubscribe_stops_delivery(self, db_session, scope_a, subscribe):
        bus = realtime_service.get_bus()
        before = bus.channel_count
        channel, received = subscribe('products')
        assert bus.channel_count == before + 1

        channel.unsubscribe()
        assert bus.channel_count == before

        products_service.create_product(scope_a, {'name': 'Cetirizine 10mg', 'price': 300})
        assert received == []

    def test_failing_subscriber_does_not_block_others(self, db_session, scope_a, subscribe):
        def broken(change):
            raise RuntimeError("subscriber bug")

        channel = realtime_service.subscription('products', scope_a, broken)
        try:
            _channel, received = subscribe('products')
            products_service.create_product(scope_a, {'name': 'Cetirizine 10mg', 'price': 300})
            assert len(received) == 1
        finally:
            channel.unsubscribe()


class TestTenantScope:
    def test_other_tenant_changes_are_not_delivered(self, db_session, scope_a, scope_b, subscribe):
        _channel, received = subscribe('products')

        products_service.create_product(scope_b, {'name': 'Amoxicillin 500mg', 'price': 900})
        products_service.create_product(scope_a, {'name': 'Cetirizine 10mg', 'price': 300})

        assert [change.record['name'] for change in received] == ['Cetirizine 10mg']

    def test_branch_scope_drops_sibling_branches(self, db_session, branch_a, branch_a2, subscribe):
        scope = Scope(tenant_id=branch_a.tenant_id, branch_id=branch_a2.id)
        _channel, received = subscribe('products', scope=scope)

        db_session.add(Product(tenant_id=branch_a.tenant_id, branch_id=branch_a.id, name='A', price=1))
        db_session.add(Product(tenant_id=branch_a2.tenant_id, branch_id=branch_a2.id, name='B', price=1))
        db_session.commit()

        assert [change.record['name'] for change in received] == ['B']

    def test_child_rows_without_tenant_are_not_delivered(self, db_session, scope_a, product_a, subscribe):
        _channel, received = subscribe('sale_items')
        draft = sales_service.draft_from_payload({'items': [{'product_id': product_a.id, 'quantity': 1}]}, scope_a)
        sales_service.save_draft(draft, scope_a)
        assert received == []
