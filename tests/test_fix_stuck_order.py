from datetime import timedelta

import fix_stuck_order
from database.models import utcnow


async def test_find_stuck_orders(coordinator, config, seller, buyer, make_active_order):
    disputed = await make_active_order()
    await coordinator.dispute(buyer, disputed.id)
    stale = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')
    await coordinator.take_order(buyer, stale.id)
    await coordinator.create_order(seller, 'sell', 2000, 20, 'USD', 'cash')

    assert [o.id for o in fix_stuck_order.find_stuck_orders()] == [disputed.id]

    later = utcnow() + timedelta(seconds=config.HOLD_INVOICE_EXPIRATION_WINDOW + 1)
    assert [o.id for o in fix_stuck_order.find_stuck_orders(now=later)] == [disputed.id, stale.id]


async def test_show_order(capsys, coordinator, seller):
    order = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')

    assert fix_stuck_order.show_order(order.id).id == order.id
    assert f"Order #{order.id} (sell)" in capsys.readouterr().out

    assert fix_stuck_order.show_order(9999) is None
    assert 'not found' in capsys.readouterr().out


async def test_print_stats(coordinator, seller, buyer):
    await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')

    stats = fix_stuck_order.print_stats()

    assert stats['users'] == 2
    assert stats['orders'] == 1 and stats['pending_orders'] == 1
