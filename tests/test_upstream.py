"""
Tests for the Kratos / Hydra admin clients against a mocked transport.
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from athena.upstream import HydraClient, KratosClient, UpstreamError


KRATOS = "http://kratos.test"
HYDRA = "http://hydra.test"


def link_to(path, token):
    return {"link": f'<{KRATOS}{path}?page_size=2&page_token={token}>; rel="next"'}


def kratos_with(handler) -> KratosClient:
    return KratosClient(KRATOS, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestKratosClient:

    @pytest.mark.asyncio
    async def test_identities_follow_link_header(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            token = request.url.params.get("page_token")
            if token is None:
                return httpx.Response(200, json=[{"id": "a"}, {"id": "b"}], headers=link_to("/admin/identities", "p2"))
            assert token == "p2"
            return httpx.Response(200, json=[{"id": "c"}])

        kratos = kratos_with(handler)

        identities = await kratos.list_identities(page_size=2)

        assert [i.id for i in identities] == ["a", "b", "c"]
        assert len(requests) == 2
        assert requests[0].url.params["page_size"] == "2"

    @pytest.mark.asyncio
    async def test_max_pages_bounds_the_walk(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=[{"id": f"x{len(calls)}"}], headers=link_to("/admin/identities", f"t{len(calls)}"))

        kratos = kratos_with(handler)

        identities = await kratos.list_identities(page_size=1, max_pages=3)

        assert len(identities) == 3
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_malformed_records_are_skipped(self):
        def handler(request):
            return httpx.Response(200, json=[{"id": "ok", "created_at": "2024-06-01T10:00:00.123456789Z"}, {"no": "id"}])

        kratos = kratos_with(handler)

        identities = await kratos.list_identities()

        assert [i.id for i in identities] == ["ok"]
        assert identities[0].created_at == datetime(2024, 6, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_sessions_stop_at_lookback(self):
        now = datetime(2024, 6, 15, tzinfo=timezone.utc)
        calls = []

        def handler(request):
            calls.append(request)
            if request.url.params.get("page_token") is None:
                page = [
                    {"id": "s1", "authenticated_at": (now - timedelta(days=1)).isoformat()},
                    {"id": "s2", "authenticated_at": (now - timedelta(days=40)).isoformat()},
                ]
                return httpx.Response(200, json=page, headers=link_to("/admin/sessions", "next"))
            return httpx.Response(200, json=[{"id": "s3", "authenticated_at": (now - timedelta(days=50)).isoformat()}])

        kratos = kratos_with(handler)

        sessions = await kratos.list_sessions_until(now - timedelta(days=30))

        assert [s.id for s in sessions] == ["s1"]
        assert len(calls) == 1
        assert calls[0].url.params.get_list("expand") == ["identity", "devices"]

    @pytest.mark.asyncio
    async def test_count_active_sessions(self):
        def handler(request):
            assert request.url.params["active"] == "true"
            return httpx.Response(200, json=[{"id": "s1"}, {"id": "s2"}])

        assert await kratos_with(handler).count_active_sessions() == 2

    @pytest.mark.asyncio
    async def test_http_errors_raise_upstream_error(self):
        def handler(request):
            return httpx.Response(503, json={"error": {"message": "unavailable"}})

        with pytest.raises(UpstreamError) as exc:
            await kratos_with(handler).list_identity_schemas()

        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_connection_errors_raise_upstream_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(UpstreamError):
            await kratos_with(handler).is_alive()

    @pytest.mark.asyncio
    async def test_update_identity_puts_body(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            return httpx.Response(200, json={"id": "user-1"})

        await kratos_with(handler).update_identity("user-1", {"traits": {}})

        assert seen == {"method": "PUT", "path": "/admin/identities/user-1"}


class TestHydraClient:

    @pytest.mark.asyncio
    async def test_list_clients_and_api_key(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            seen["path"] = request.url.path
            return httpx.Response(200, json=[{"client_id": "spa", "token_endpoint_auth_method": "none"}])

        hydra = HydraClient(HYDRA, api_key="ory_pat_x", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        clients = await hydra.list_oauth2_clients()

        assert clients[0].is_public
        assert seen == {"auth": "Bearer ory_pat_x", "path": "/admin/clients"}

    @pytest.mark.asyncio
    async def test_is_alive(self):
        def handler(request):
            assert request.url.path == "/health/alive"
            return httpx.Response(200, json={"status": "ok"})

        hydra = HydraClient(HYDRA, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        assert await hydra.is_alive() is True
