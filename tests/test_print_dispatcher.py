from unittest.mock import AsyncMock, MagicMock

import pytest

from yqpay.services.print_dispatcher import PrintDispatcher, build_print_job, job_message


def fake_ws(fail=False):
    ws = MagicMock()
    ws.send_json = AsyncMock(side_effect=ConnectionError("socket closed") if fail else None)
    ws.close = AsyncMock()
    return ws


def job(number):
    return build_print_job({"_id": f"o{number}", "orderNumber": f"ORD-{number}"}, printer_name="EPSON")


@pytest.fixture
def dispatcher():
    return PrintDispatcher(history_limit=50)


def test_job_message_shape():
    msg = job_message(job(1))
    assert msg["type"] == "print-order"
    assert msg["order"]["orderNumber"] == "ORD-1"
    assert msg["printerName"] == "EPSON"


async def test_enqueue_without_agent_queues(dispatcher):
    result = await dispatcher.enqueue("t1", job(1))
    assert result == {"success": False, "queued": True, "message": "Print job queued (client not connected)"}
    assert dispatcher.status("t1")["queuedJobs"] == 1
    assert dispatcher.status("t1")["connected"] is False


async def test_register_flushes_queue_in_order(dispatcher):
    for n in (1, 2, 3):
        await dispatcher.enqueue("t1", job(n))
    ws = fake_ws()

    assert await dispatcher.register("t1", ws) == 3

    sent = [call.args[0]["order"]["orderNumber"] for call in ws.send_json.await_args_list]
    assert sent == ["ORD-1", "ORD-2", "ORD-3"]
    assert dispatcher.status("t1")["queuedJobs"] == 0


async def test_enqueue_with_agent_sends_immediately(dispatcher):
    ws = fake_ws()
    await dispatcher.register("t1", ws)
    assert await dispatcher.enqueue("t1", job(7)) == {"success": True, "sent": True}
    ws.send_json.assert_awaited_once()


async def test_new_agent_replaces_old_one(dispatcher):
    old, new = fake_ws(), fake_ws()
    await dispatcher.register("t1", old)
    await dispatcher.register("t1", new)

    old.close.assert_awaited_once()
    await dispatcher.enqueue("t1", job(1))
    new.send_json.assert_awaited_once()
    old.send_json.assert_not_awaited()

    # the replaced socket's disconnect must not unregister the new one
    await dispatcher.unregister("t1", old)
    assert dispatcher.is_connected("t1")


async def test_failed_send_requeues_job(dispatcher):
    await dispatcher.register("t1", fake_ws(fail=True))
    result = await dispatcher.enqueue("t1", job(1))
    assert result["queued"] is True
    assert not dispatcher.is_connected("t1")

    healthy = fake_ws()
    assert await dispatcher.register("t1", healthy) == 1


async def test_flush_failure_keeps_unsent_tail(dispatcher):
    for n in (1, 2):
        await dispatcher.enqueue("t1", job(n))
    assert await dispatcher.register("t1", fake_ws(fail=True)) == 0
    assert dispatcher.status("t1")["queuedJobs"] == 2
    assert not dispatcher.is_connected("t1")


async def test_status_shows_last_ten_prints(dispatcher):
    ws = fake_ws()
    await dispatcher.register("t1", ws)
    for n in range(12):
        await dispatcher.enqueue("t1", job(n))
    dispatcher.confirm("t1", "o11")

    recent = dispatcher.status("t1")["recentPrints"]
    assert len(recent) == 10
    assert recent[-1]["orderId"] == "o11"
    assert recent[-1]["status"] == "printed"
    assert recent[-2]["orderNumber"] == "ORD-11"


async def test_history_is_bounded():
    dispatcher = PrintDispatcher(history_limit=3)
    await dispatcher.register("t1", fake_ws())
    for n in range(5):
        await dispatcher.enqueue("t1", job(n))
    assert len(dispatcher.history["t1"]) == 3


async def test_close_all(dispatcher):
    ws = fake_ws()
    await dispatcher.register("t1", ws)
    await dispatcher.close_all()
    ws.close.assert_awaited_once()
    assert dispatcher.sessions == {}
