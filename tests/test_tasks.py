import asyncio
import types

from biteclub import tasks


def runner_for(container):
    def run(work):
        return asyncio.run(work(container))
    return run


def test_place_order_call_reports_call_sid(monkeypatch):
    async def notify_restaurant(order_id):
        return types.SimpleNamespace(external_call_id=f"CA_{order_id}")

    container = types.SimpleNamespace(calls=types.SimpleNamespace(notify_restaurant=notify_restaurant))
    monkeypatch.setattr(tasks, "run_with_services", runner_for(container))

    result = tasks.place_order_call.apply(args=["42"]).get()

    assert result["success"] is True
    assert result["call_sid"] == "CA_42"


def test_place_order_call_without_call(monkeypatch):
    async def notify_restaurant(order_id):
        return None

    container = types.SimpleNamespace(calls=types.SimpleNamespace(notify_restaurant=notify_restaurant))
    monkeypatch.setattr(tasks, "run_with_services", runner_for(container))

    assert tasks.place_order_call.apply(args=["42"]).get()["success"] is False


def test_sync_order_to_pos(monkeypatch):
    async def sync_order_to_integrations(order_id):
        return [{"type": "SQUARE", "success": True, "external_order_id": "SQ-1", "error": None}]

    container = types.SimpleNamespace(
        integrations=types.SimpleNamespace(sync_order_to_integrations=sync_order_to_integrations)
    )
    monkeypatch.setattr(tasks, "run_with_services", runner_for(container))

    result = tasks.sync_order_to_pos.apply(args=["42"]).get()

    assert result["success"] is True
    assert result["results"][0]["external_order_id"] == "SQ-1"


def test_drain_outbox(monkeypatch):
    async def dispatch_pending():
        return 3

    container = types.SimpleNamespace(outbox=types.SimpleNamespace(dispatch_pending=dispatch_pending))
    monkeypatch.setattr(tasks, "run_with_services", runner_for(container))

    assert tasks.drain_outbox.apply().get() == {"delivered": 3}


def test_health_check_task():
    assert tasks.health_check.apply().get()["status"] == "healthy"
