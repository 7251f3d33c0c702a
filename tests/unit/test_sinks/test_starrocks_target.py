"""Unit tests for the StarRocks Stream Load target (HTTP mocked)."""

import json

import httpx
import pytest

ROWS = [{"id": 1, "name": "a", "__op": 0}, {"id": 2, "__op": 1}]


def _target(handler):
    from cdc_engine.common.config import StarRocksConfig
    from cdc_engine.sinks.starrocks_target import StarRocksStreamLoadTarget

    target = StarRocksStreamLoadTarget(
        StarRocksConfig(load_url="http://fe:8030", database="analytics"),
        table_map={"shop.customers": "dim_customers"},
    )
    target._client = httpx.Client(transport=httpx.MockTransport(handler), auth=("root", ""))
    return target


def _table():
    from cdc_engine.common.models import TableId

    return TableId("shop", "customers")


@pytest.mark.unit
class TestStarRocksStreamLoadTarget:
    """Test Stream Load requests and response handling."""

    def test_successful_load_sends_label_and_columns(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"Status": "Success"})

        _target(handler).load(_table(), ROWS, "upsert-shop-customers-0_1_0-0_2_0")

        assert seen["url"] == "http://fe:8030/api/analytics/dim_customers/_stream_load"
        assert seen["headers"]["label"] == "upsert-shop-customers-0_1_0-0_2_0"
        assert seen["headers"]["columns"] == "`id`,`name`,`__op`"
        assert seen["body"] == ROWS

    def test_redirect_to_backend_is_followed(self):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            if request.url.host == "fe":
                return httpx.Response(307, headers={"location": "http://be:8040/api/analytics/dim_customers/_stream_load"})
            return httpx.Response(200, json={"Status": "Publish Timeout"})

        _target(handler).load(_table(), ROWS, "label")

        assert calls[-1].startswith("http://be:8040")

    def test_existing_finished_label_counts_as_loaded(self):
        def handler(request):
            return httpx.Response(200, json={"Status": "Label Already Exists", "ExistingJobStatus": "FINISHED"})

        _target(handler).load(_table(), ROWS, "label")

    def test_existing_running_label_is_transient(self):
        from cdc_engine.common.errors import TransientIOError

        def handler(request):
            return httpx.Response(200, json={"Status": "Label Already Exists", "ExistingJobStatus": "PREPARE"})

        with pytest.raises(TransientIOError):
            _target(handler).load(_table(), ROWS, "label")

    @pytest.mark.parametrize("status_code", [500, 503])
    def test_server_errors_are_transient(self, status_code):
        from cdc_engine.common.errors import TransientIOError

        with pytest.raises(TransientIOError):
            _target(lambda request: httpx.Response(status_code)).load(_table(), ROWS, "label")

    def test_connection_error_is_transient(self):
        from cdc_engine.common.errors import TransientIOError

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientIOError):
            _target(handler).load(_table(), ROWS, "label")

    def test_rejected_data_is_sink_error(self):
        from cdc_engine.common.errors import SinkWriteError

        def handler(request):
            return httpx.Response(200, json={"Status": "Fail", "Message": "too many filtered rows"})

        with pytest.raises(SinkWriteError):
            _target(handler).load(_table(), ROWS, "label")

    def test_client_error_is_sink_error(self):
        from cdc_engine.common.errors import SinkWriteError

        with pytest.raises(SinkWriteError):
            _target(lambda request: httpx.Response(401, text="denied")).load(_table(), ROWS, "label")
