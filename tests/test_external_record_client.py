"""ExternalRecordClient against a real local HTTP server (aiohttp test server)."""
import asyncio

from aiohttp import web
from aiohttp.test_utils import TestServer

from bl_reconciliation.models.verification import ColumnMapping, StoreReconciliationConfig
from bl_reconciliation.services.external_records import ExternalRecordClient, build_records_url

COLUMNS = ColumnMapping(invoice_ref="RefFacture", bl_number="NumBL", amount="Montant", supplier="Fournisseurs")


def _config(base_url: str, **kw) -> StoreReconciliationConfig:
    values = dict(store_id=7, base_url=base_url, table_id="tbl_inv", api_token="tok_abc", columns=COLUMNS)
    values.update(kw)
    return StoreReconciliationConfig(**values)


async def _with_server(handler, fn, path="/api/v2/tables/{table_id}/records"):
    app = web.Application()
    app.router.add_get(path, handler)
    async with TestServer(app) as server:
        return await fn(str(server.make_url("/")))


def test_build_records_url_variants():
    assert build_records_url(_config("https://noco.test/")) == "https://noco.test/api/v2/tables/tbl_inv/records"
    assert build_records_url(_config("https://noco.test", project_id="p1")) == "https://noco.test/api/v1/db/data/noco/p1/tbl_inv"


def test_fetch_sends_filter_and_token():
    seen = {}

    async def handler(request):
        seen["where"] = request.query.get("where")
        seen["limit"] = request.query.get("limit")
        seen["token"] = request.headers.get("xc-token")
        return web.json_response({"list": [{"RefFacture": "FAC123456", "Fournisseurs": "CMP"}], "pageInfo": {}})

    async def call(base):
        return await ExternalRecordClient(page_limit=50).fetch_candidates(_config(base), "FAC123456")

    outcome = asyncio.run(_with_server(handler, call))
    assert outcome.success is True
    assert outcome.records == [{"RefFacture": "FAC123456", "Fournisseurs": "CMP"}]
    assert seen == {"where": "(RefFacture,eq,FAC123456)", "limit": "50", "token": "tok_abc"}


def test_empty_reference_fetches_first_page_without_filter():
    seen = {}

    async def handler(request):
        seen["where"] = request.query.get("where")
        return web.json_response({"list": []})

    async def call(base):
        return await ExternalRecordClient().fetch_candidates(_config(base), "")

    outcome = asyncio.run(_with_server(handler, call))
    assert outcome.success is True and outcome.records == []
    assert seen["where"] is None


def test_project_id_uses_v1_path():
    async def handler(request):
        return web.json_response({"list": [{"Id": 1}]})

    async def call(base):
        return await ExternalRecordClient().check_connection(_config(base, project_id="p1"))

    outcome = asyncio.run(_with_server(handler, call, path="/api/v1/db/data/noco/{project}/{table_id}"))
    assert outcome.success is True and len(outcome.records) == 1


def test_non_2xx_is_http_status_error():
    async def handler(request):
        return web.json_response({"msg": "Unauthorized"}, status=401)

    async def call(base):
        return await ExternalRecordClient().fetch_candidates(_config(base), "FAC1")

    outcome = asyncio.run(_with_server(handler, call))
    assert outcome.success is False
    assert outcome.error_code == "http_status"
    assert outcome.status_code == 401


def test_payload_without_list_is_invalid():
    async def handler(request):
        return web.json_response({"rows": []})

    async def call(base):
        return await ExternalRecordClient().fetch_candidates(_config(base), "FAC1")

    outcome = asyncio.run(_with_server(handler, call))
    assert outcome.success is False and outcome.error_code == "invalid_payload"


def test_timeout_is_classified_not_raised():
    async def handler(request):
        await asyncio.sleep(1.0)
        return web.json_response({"list": []})

    async def call(base):
        return await ExternalRecordClient(timeout_seconds=0.2).fetch_candidates(_config(base), "FAC1")

    outcome = asyncio.run(_with_server(handler, call))
    assert outcome.success is False and outcome.error_code == "timeout"


def test_unreachable_host_is_transport_error():
    async def call():
        # Port 9 (discard) on localhost is normally closed.
        return await ExternalRecordClient(timeout_seconds=2).fetch_candidates(_config("http://127.0.0.1:9"), "FAC1")

    outcome = asyncio.run(call())
    assert outcome.success is False
    assert outcome.error_code in {"transport_error", "timeout"}
