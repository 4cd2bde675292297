"""
Tests for the HTTP and WebSocket surfaces.
"""

import pytest
from fastapi.testclient import TestClient

from cipherchain.core import ChainStore
from cipherchain.core.chain import AppendConflictError
from cipherchain.db.store import InMemoryBlockStore, StorageUnavailableError
from cipherchain.main import create_app


@pytest.fixture
def block_store():
    return InMemoryBlockStore()


@pytest.fixture
def chain_store(block_store):
    return ChainStore(block_store=block_store)


@pytest.fixture
def client(chain_store):
    with TestClient(create_app(chain_store=chain_store)) as test_client:
        yield test_client


def send(client, from_, to, payload):
    return client.post(
        "/api/blockchain/messages",
        json={"from": from_, "to": to, "payload": payload},
    )


class TestStartup:

    def test_genesis_created_on_startup(self, client, chain_store):
        assert chain_store.block_count == 1
        assert chain_store.get_tail().index == 0

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_health_detailed(self, client):
        response = client.get("/health/detailed")
        assert response.status_code == 200
        body = response.json()
        assert body["checks"]["block_store"]["block_count"] == 1
        assert body["checks"]["chain_integrity"]["valid"] is True

    def test_health_detailed_reports_tampering(self, client, block_store):
        send(client, "alice", "bob", "ct1")
        block_store._blocks[1] = block_store._blocks[1].model_copy(update={"payload": "x"})

        response = client.get("/health/detailed")
        assert response.status_code == 503
        assert response.json()["checks"]["chain_integrity"]["valid"] is False

    def test_request_id_header(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_metrics(self, client):
        send(client, "alice", "bob", "ct1")
        summary = client.get("/metrics").json()
        assert summary["blocks_appended"] >= 1
        assert "append_latency_p50_ms" in summary


class TestMessages:

    def test_append_returns_receipt(self, client, chain_store):
        genesis = chain_store.get_tail()

        response = send(client, "alice", "bob", "ct1")
        assert response.status_code == 201

        body = response.json()
        assert set(body) == {"index", "hash", "prevHash", "timestamp"}
        assert body["index"] == 1
        assert body["prevHash"] == genesis.hash
        assert body["timestamp"].endswith("Z")

    def test_missing_field_rejected(self, client):
        response = client.post("/api/blockchain/messages", json={"from": "alice", "to": "bob"})
        assert response.status_code == 422

    def test_empty_recipient_rejected(self, client):
        response = send(client, "alice", "", "ct")
        assert response.status_code == 422

    def test_empty_payload_rejected(self, client):
        assert send(client, "alice", "bob", "").status_code == 422

    def test_conflict_maps_to_503(self, client, chain_store, monkeypatch):
        def conflicted(*args, **kwargs):
            raise AppendConflictError("lost every race")

        monkeypatch.setattr(chain_store, "append", conflicted)

        response = send(client, "alice", "bob", "ct1")
        assert response.status_code == 503


class TestQueries:

    @pytest.fixture(autouse=True)
    def messages(self, client):
        send(client, "alice", "bob", "ct1")
        send(client, "bob", "carol", "ct2")
        send(client, "carol", "alice", "ct3")

    def test_full_chain(self, client):
        blocks = client.get("/api/blockchain/chain").json()
        assert [b["index"] for b in blocks] == [0, 1, 2, 3]
        assert blocks[0]["from"] == "system"
        assert blocks[1]["prevHash"] == blocks[0]["hash"]

    def test_ledger_for_named_participant(self, client):
        blocks = client.get("/api/blockchain/ledger/alice").json()
        assert [b["index"] for b in blocks] == [0, 1, 3]
        assert blocks[1]["payload"] == "ct1"

    def test_ledger_for_caller(self, client):
        response = client.get("/api/blockchain/ledger", headers={"X-Username": "carol"})
        assert [b["index"] for b in response.json()] == [0, 2, 3]

    def test_ledger_requires_identity(self, client):
        assert client.get("/api/blockchain/ledger").status_code == 401

    def test_tail(self, client):
        tail = client.get("/api/blockchain/tail").json()
        assert tail["index"] == 3
        assert tail["to"] == "alice"

    def test_validate_ok(self, client):
        assert client.get("/api/blockchain/validate").json() == {"valid": True}

    def test_storage_outage_maps_to_503(self, client, block_store, monkeypatch):
        def unavailable(*args, **kwargs):
            raise StorageUnavailableError("database unreachable")

        for name in ("list_all", "list_for_participant", "get_tail"):
            monkeypatch.setattr(block_store, name, unavailable)

        for path in ("chain", "ledger/alice", "tail", "validate"):
            assert client.get(f"/api/blockchain/{path}").status_code == 503

        response = client.get("/api/blockchain/ledger", headers={"X-Username": "carol"})
        assert response.status_code == 503

    def test_validate_reports_tampering(self, client, block_store):
        block_store._blocks[1] = block_store._blocks[1].model_copy(update={"payload": "edited"})

        response = client.get("/api/blockchain/validate")
        assert response.status_code == 200
        assert response.json() == {
            "valid": False,
            "error": "hash invalid at position 1",
            "position": 1,
        }


class TestTransport:

    def test_send_message_over_websocket(self, client, chain_store):
        with client.websocket_connect("/ws/bob") as bob:
            assert bob.receive_json() == {"type": "connected", "username": "bob"}

            with client.websocket_connect("/ws/alice") as alice:
                assert alice.receive_json()["type"] == "connected"

                alice.send_json({"type": "send-message", "to": "bob", "encryptedPayload": "ct1"})

                pushed = bob.receive_json()
                assert pushed["type"] == "receive-message"
                assert pushed["from"] == "alice"
                assert pushed["block"]["index"] == 1
                assert pushed["block"]["payload"] == "ct1"

                ack = alice.receive_json()
                assert ack["type"] == "message-sent"
                assert ack["blockNumber"] == 1
                assert ack["hash"] == pushed["block"]["hash"]

        assert chain_store.get_tail().from_ == "alice"

    def test_offline_recipient_still_recorded(self, client, chain_store):
        with client.websocket_connect("/ws/alice") as alice:
            alice.receive_json()
            alice.send_json({"type": "send-message", "to": "bob", "encryptedPayload": "ct1"})
            assert alice.receive_json()["type"] == "message-sent"

        assert [b.index for b in chain_store.get_chain_for_participant("bob")] == [0, 1]

    def test_failed_append_reported_to_sender(self, client, chain_store):
        with client.websocket_connect("/ws/alice") as alice:
            alice.receive_json()
            alice.send_json({"type": "send-message", "to": "", "encryptedPayload": "ct1"})
            assert alice.receive_json() == {"type": "error", "message": "Failed to send message"}

        assert chain_store.block_count == 1

    def test_registry_cleared_on_disconnect(self, client):
        with client.websocket_connect("/ws/alice") as alice:
            alice.receive_json()
            assert client.app.state.connections.is_connected("alice")

        assert not client.app.state.connections.is_connected("alice")

    def test_malformed_frames_rejected(self, client, chain_store):
        with client.websocket_connect("/ws/alice") as alice:
            alice.receive_json()

            alice.send_text("not json")
            assert alice.receive_json() == {"type": "error", "message": "Invalid JSON"}

            alice.send_json({"type": "typing"})
            assert alice.receive_json() == {"type": "error", "message": "Unknown message type"}

        assert chain_store.block_count == 1
