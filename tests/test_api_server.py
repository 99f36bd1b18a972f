"""
API Server — Endpoint Tests
Drives the aiohttp app with the aiohttp test client against the in-memory host.
"""
import asyncio

from aiohttp.test_utils import TestClient, TestServer

from api_server import ApiServer
from conftest import connect_payload
from fleet.errors import CommandError


def call(fleet, method, path, **kwargs):
    """Issue one request; returns (status, json body)."""
    api = ApiServer(service=fleet.service, registry=fleet.registry, db=fleet.db)

    async def scenario():
        async with TestClient(TestServer(api.app)) as client:
            resp = await client.request(method, path, **kwargs)
            return resp.status, await resp.json()

    return asyncio.run(scenario())


class TestConnectEndpoint:
    def test_success(self, fleet):
        status, body = call(fleet, "POST", "/api/mt5/connect", json=connect_payload())
        assert status == 200
        assert body["success"] is True
        assert body["instanceId"] == 1
        assert body["tradingSymbol"] == "EURUSD"

    def test_missing_field(self, fleet):
        payload = connect_payload()
        del payload["server"]
        status, body = call(fleet, "POST", "/api/mt5/connect", json=payload)
        assert status == 400
        assert body["success"] is False

    def test_malformed_json(self, fleet):
        status, body = call(fleet, "POST", "/api/mt5/connect", data="{not json",
                            headers={"Content-Type": "application/json"})
        assert status == 400

    def test_full_pool(self, fleet):
        call(fleet, "POST", "/api/mt5/connect", json=connect_payload("u1"))
        call(fleet, "POST", "/api/mt5/connect", json=connect_payload("u2"))
        status, body = call(fleet, "POST", "/api/mt5/connect", json=connect_payload("u3"))
        assert status == 503
        assert body["isFull"] is True
        assert body["activeUsers"] == 2

    def test_start_failure(self, fleet):
        fleet.host.fail("compose-up", CommandError("compose-up:mt5-instance-1", "no space left"))
        status, body = call(fleet, "POST", "/api/mt5/connect", json=connect_payload())
        assert status == 500
        assert body["success"] is False


class TestDisconnectEndpoint:
    def test_post_and_delete(self, fleet):
        call(fleet, "POST", "/api/mt5/connect", json=connect_payload("u1"))
        call(fleet, "POST", "/api/mt5/connect", json=connect_payload("u2"))

        status, body = call(fleet, "POST", "/api/mt5/disconnect", json={"userId": "u1", "instanceId": 1})
        assert status == 200
        assert body == {"success": True, "message": "Instance stopped successfully"}

        status, _ = call(fleet, "DELETE", "/api/mt5/disconnect", json={"userId": "u2", "instanceId": 2})
        assert status == 200
        assert fleet.registry.count_occupied() == 0

    def test_invalid(self, fleet):
        status, _ = call(fleet, "POST", "/api/mt5/disconnect", json={"userId": "u1", "instanceId": 99})
        assert status == 400

    def test_cleanup_failure(self, fleet):
        call(fleet, "POST", "/api/mt5/connect", json=connect_payload("u1"))
        fleet.host.fail("compose-down", CommandError("compose-down:mt5-instance-1", "x"))
        status, body = call(fleet, "POST", "/api/mt5/disconnect", json={"userId": "u1", "instanceId": 1})
        assert status == 500
        assert body["success"] is False


class TestHeartbeatEndpoint:
    def test_known_user(self, fleet):
        call(fleet, "POST", "/api/mt5/connect", json=connect_payload("u1"))
        status, body = call(fleet, "POST", "/api/mt5/heartbeat", json={"userId": "u1"})
        assert status == 200
        assert body == {"success": True, "instanceId": 1}

    def test_unknown_user(self, fleet):
        status, _ = call(fleet, "POST", "/api/mt5/heartbeat", json={"userId": "ghost"})
        assert status == 404

    def test_missing_user(self, fleet):
        status, _ = call(fleet, "POST", "/api/mt5/heartbeat", json={})
        assert status == 400


class TestOpsEndpoints:
    def test_health(self, fleet):
        status, body = call(fleet, "GET", "/health")
        assert status == 200
        assert body["status"] == "ok"

    def test_slots(self, fleet):
        call(fleet, "POST", "/api/mt5/connect", json=connect_payload("u1"))
        status, body = call(fleet, "GET", "/api/slots")
        assert status == 200
        assert body["maxInstances"] == 2
        assert body["slots"][0]["session"]["userId"] == "u1"
        assert body["slots"][1]["session"] is None

    def test_capacity(self, fleet):
        status, body = call(fleet, "GET", "/api/capacity")
        assert status == 200
        assert body == {"active": 0, "registered": 0, "maxInstances": 2}

    def test_events(self, fleet):
        call(fleet, "POST", "/api/mt5/connect", json=connect_payload("u1"))
        status, body = call(fleet, "GET", "/api/events?n=10")
        assert status == 200
        assert body["total"] == 1
        assert body["events"][0]["event"] == "ALLOCATED"
        assert body["events"][0]["user_id"] == "u1"

    def test_events_bad_limit(self, fleet):
        status, _ = call(fleet, "GET", "/api/events?n=lots")
        assert status == 400
