import json

import httpx
import pytest

from amp_relay.peers import HostIdentity, PeerSyncClient, check_hosts_health


def _host(host_id, url=None, **extra):
    data = {"id": host_id, "name": host_id.title(), "url": url or f"http://{host_id}.example:23000"}
    data.update(extra)
    return data


def _register_body(host, **source):
    return {"host": host, "source": {"initiator": host["id"], **source}}


@pytest.mark.asyncio
async def test_register_new_peer_returns_known_hosts(services):
    peers = services.peers
    first = await peers.register_peer(_register_body(_host("alpha")))
    assert (first.status_code, first.success, first.registered, first.already_known) == (200, True, True, False)
    assert first.host["id"] == "test-host"
    assert first.known_hosts == []

    second = await peers.register_peer(_register_body(_host("beta")))
    assert [h["id"] for h in second.known_hosts] == ["alpha"]

    again = await peers.register_peer(_register_body(_host("beta")))
    assert (again.registered, again.already_known) == (False, True)
    assert [h["id"] for h in again.known_hosts] == ["alpha"]

    stored = await peers.get("alpha")
    assert stored.sync_source == "alpha"
    assert stored.description == "Peer registered from alpha"


@pytest.mark.asyncio
async def test_duplicates_are_detected_by_url_and_alias(services):
    peers = services.peers
    await peers.register_peer(_register_body(_host("alpha", aliases=["10.1.0.7", "alpha-box"])))

    same_url = await peers.register_peer(_register_body(_host("alpha-2", url="http://alpha.example:23000")))
    same_alias = await peers.register_peer(_register_body(_host("alpha-box")))
    assert same_url.already_known and not same_url.registered
    assert same_alias.already_known and not same_alias.registered
    assert [p.id for p in await peers.list_peers()] == ["alpha"]


@pytest.mark.asyncio
@pytest.mark.parametrize("identifier", ["test-host", "TEST-HOST", "test-alias", "10.0.0.1"])
async def test_cannot_register_self(services, identifier):
    result = await services.peers.register_peer(_register_body(_host(identifier)))
    assert result.status_code == 400
    assert result.success is False
    assert result.error == "Cannot register self as peer"


@pytest.mark.asyncio
async def test_register_requires_host_fields(services):
    result = await services.peers.register_peer({"host": {"id": "alpha", "name": "Alpha"}})
    assert result.status_code == 400
    assert "host.url" in result.error


@pytest.mark.asyncio
async def test_depth_beyond_limit_is_rejected(services):
    result = await services.peers.register_peer(
        _register_body(_host("alpha"), propagationId="p-1", propagationDepth=4)
    )
    assert result.status_code == 200
    assert result.success is False
    assert "depth" in result.error
    assert await services.peers.get("alpha") is None

    at_limit = await services.peers.register_peer(
        _register_body(_host("alpha"), propagationId="p-2", propagationDepth=3)
    )
    assert at_limit.registered


@pytest.mark.asyncio
async def test_propagation_id_is_processed_once(services):
    peers = services.peers
    first = await peers.register_peer(_register_body(_host("alpha"), propagationId="prop-1", propagationDepth=1))
    assert first.registered

    repeat = await peers.register_peer(_register_body(_host("beta"), propagationId="prop-1", propagationDepth=1))
    assert repeat.to_dict() == {
        "success": True,
        "registered": False,
        "alreadyKnown": True,
        "host": repeat.host,
        "knownHosts": [],
    }
    assert await peers.get("beta") is None


@pytest.mark.asyncio
async def test_descriptions_are_sanitized(services):
    await services.peers.register_peer(_register_body(_host("alpha", description="line\x00one\x1b[31m" + "x" * 600)))
    stored = await services.peers.get("alpha")
    assert "\x00" not in stored.description
    assert "\x1b" not in stored.description
    assert len(stored.description) == 500


@pytest.mark.asyncio
async def test_exchange_adds_only_reachable_unknown_hosts(services):
    await services.peers.register_peer(_register_body(_host("alpha")))
    probed = []

    async def fake_health(hosts):
        probed.extend(h.id for h in hosts)
        return {h.id: h.id != "gamma" for h in hosts}

    services.peers.health_checker = fake_health
    result = await services.peers.exchange_peers(
        {
            "fromHost": _host("beta"),
            "knownHosts": [
                _host("alpha"),
                _host("beta"),
                _host("test-host"),
                _host("delta"),
                _host("delta"),
                _host("gamma"),
                {"id": "broken"},
            ],
        }
    )
    assert result.status_code == 200
    assert result.to_dict() == {
        "success": True,
        "newlyAdded": ["delta"],
        "alreadyKnown": ["alpha"],
        "unreachable": ["gamma"],
    }
    assert sorted(probed) == ["delta", "gamma"]
    delta = await services.peers.get("delta")
    assert delta.sync_source == "peer-exchange:beta"


@pytest.mark.asyncio
async def test_exchange_validation_and_depth(services):
    missing = await services.peers.exchange_peers({"fromHost": _host("beta")})
    assert missing.status_code == 400

    too_deep = await services.peers.exchange_peers(
        {"fromHost": _host("beta"), "knownHosts": [], "propagationDepth": 5}
    )
    assert (too_deep.status_code, too_deep.success) == (200, False)

    body = {"fromHost": _host("beta"), "knownHosts": [], "propagationId": "x-1", "propagationDepth": 1}
    assert (await services.peers.exchange_peers(body)).success
    assert (await services.peers.exchange_peers(body)).to_dict()["newlyAdded"] == []


@pytest.mark.asyncio
async def test_identity_reports_self(services):
    identity = services.peers.identity()
    assert identity["id"] == "test-host"
    assert identity["isSelf"] is True
    assert identity["url"] == "http://test-host.example:8765"

    forwarded = services.peers.identity(forwarded_host="relay.example.com", forwarded_proto="https")
    assert forwarded["url"] == "https://relay.example.com"


@pytest.mark.asyncio
async def test_check_hosts_health_maps_failures_to_false():
    def handler(request):
        if request.url.host == "down.example":
            raise httpx.ConnectError("refused", request=request)
        if request.url.host == "sick.example":
            return httpx.Response(503)
        assert request.url.path == "/health/liveness"
        return httpx.Response(200, json={"status": "alive"})

    hosts = [
        HostIdentity(id="up", name="Up", url="http://up.example"),
        HostIdentity(id="down", name="Down", url="http://down.example"),
        HostIdentity(id="sick", name="Sick", url="http://sick.example"),
    ]
    health = await check_hosts_health(hosts, transport=httpx.MockTransport(handler))
    assert health == {"up": True, "down": False, "sick": False}


def _sync_client(services, handler):
    return PeerSyncClient(services.peers, api_path="/api/v1/", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_register_with_peer_parses_known_hosts(services):
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "success": True,
                "registered": True,
                "alreadyKnown": False,
                "host": _host("alpha"),
                "knownHosts": [_host("gamma"), {"id": "incomplete"}],
            },
        )

    outcome = await _sync_client(services, handler).register_with_peer("http://alpha.example:23000/")
    assert outcome.success
    assert [h.id for h in outcome.known_hosts] == ["gamma"]
    assert captured["url"] == "http://alpha.example:23000/api/v1/hosts/register-peer"
    assert captured["body"]["host"]["id"] == "test-host"
    assert captured["body"]["source"]["initiator"] == "test-host"
    assert "propagationId" not in captured["body"]["source"]


@pytest.mark.asyncio
async def test_register_with_unreachable_peer_reports_failure(services):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    outcome = await _sync_client(services, handler).register_with_peer("http://alpha.example:23000")
    assert outcome.success is False
    assert "ConnectError" in outcome.error


@pytest.mark.asyncio
async def test_add_host_with_sync_back_registers_and_propagates(services):
    await services.peers.register_peer(_register_body(_host("alpha")))
    exchanges = []

    def handler(request):
        if request.url.path == "/health/liveness":
            return httpx.Response(200, json={"status": "alive"})
        body = json.loads(request.content)
        if request.url.path.endswith("/hosts/register-peer"):
            return httpx.Response(
                200,
                json={"success": True, "registered": True, "alreadyKnown": False, "knownHosts": [_host("gamma")]},
            )
        exchanges.append((request.url.host, body))
        return httpx.Response(200, json={"success": True, "newlyAdded": [body["knownHosts"][0]["id"]]})

    result = await _sync_client(services, handler).add_host_with_sync(
        HostIdentity(id="beta", name="Beta", url="http://beta.example:23000")
    )
    assert result.success
    assert result.local_add
    assert result.back_registered
    assert result.peers_exchanged == 1
    # alpha and the newly learned gamma both accept the propagated host
    assert result.peers_shared == 2
    assert result.errors == []
    assert {p.id for p in await services.peers.list_peers()} == {"alpha", "beta", "gamma"}

    propagated = [body for host, body in exchanges if host == "alpha.example"]
    assert len(propagated) == 1
    assert propagated[0]["propagationDepth"] == 1
    assert propagated[0]["propagationId"]
    assert propagated[0]["knownHosts"][0]["id"] == "beta"
    assert propagated[0]["fromHost"]["id"] == "test-host"


@pytest.mark.asyncio
async def test_add_host_with_sync_keeps_local_add_when_peer_is_down(services):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await _sync_client(services, handler).add_host_with_sync(
        HostIdentity(id="beta", name="Beta", url="http://beta.example:23000")
    )
    assert result.success
    assert result.local_add
    assert result.back_registered is False
    assert result.errors and result.errors[0].startswith("Back-registration failed")


@pytest.mark.asyncio
async def test_add_host_with_sync_rejects_self(services):
    def handler(request):  # pragma: no cover - never called
        raise AssertionError("no network expected")

    result = await _sync_client(services, handler).add_host_with_sync(
        HostIdentity(id="test-host", name="Me", url="http://test-host.example:8765")
    )
    assert result.success is False
    assert result.errors == ["Cannot add self as peer"]


@pytest.mark.asyncio
async def test_sync_with_all_peers_reports_each_peer(services):
    await services.peers.register_peer(_register_body(_host("alpha")))
    await services.peers.register_peer(_register_body(_host("beta")))

    def handler(request):
        if request.url.host == "beta.example":
            return httpx.Response(500, text="boom")
        return httpx.Response(200, json={"success": True, "knownHosts": []})

    result = await _sync_client(services, handler).sync_with_all_peers()
    assert result == {"synced": ["alpha"], "failed": ["beta"]}
