from unittest.mock import MagicMock

import pytest
import requests

from abi_ninja.rpc_client import RpcClient


def rpc_response(result=None, error=None, status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    body = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    resp.json.return_value = body
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    else:
        resp.raise_for_status.return_value = None
    return resp


def make_client(urls, *responses, failover=True):
    client = RpcClient(urls, max_retries=1, backoff_seconds=0.0, failover=failover)
    client.session = MagicMock()
    client.session.post.side_effect = list(responses)
    return client


def test_single_url_string_is_accepted():
    client = RpcClient("https://rpc.one")
    assert client.rpc_urls == ["https://rpc.one"]
    assert client.rpc_url == "https://rpc.one"


def test_empty_url_list_is_rejected():
    with pytest.raises(ValueError):
        RpcClient(["", "  "])


def test_get_storage_at_sends_expected_payload():
    word = "0x" + "0" * 24 + "ab" * 20
    client = make_client(["https://rpc.one"], rpc_response(word))

    assert client.get_storage_at("0x" + "11" * 20, "0x0") == word

    args, kwargs = client.session.post.call_args
    assert args[0] == "https://rpc.one"
    assert kwargs["json"]["method"] == "eth_getStorageAt"
    assert kwargs["json"]["params"] == ["0x" + "11" * 20, "0x0", "latest"]


def test_get_code():
    client = make_client(["https://rpc.one"], rpc_response("0x6080"))
    assert client.get_code("0x" + "11" * 20) == "0x6080"


def test_transport_failure_moves_to_next_endpoint():
    client = make_client(
        ["https://rpc.one", "https://rpc.two"],
        requests.ConnectionError("refused"),
        rpc_response("0x10"),
    )

    assert client.get_code("0x" + "11" * 20) == "0x10"
    urls = [call.args[0] for call in client.session.post.call_args_list]
    assert urls == ["https://rpc.one", "https://rpc.two"]


def test_failover_disabled_uses_primary_only():
    client = make_client(
        ["https://rpc.one", "https://rpc.two"],
        requests.ConnectionError("refused"),
        rpc_response("0x10"),
        failover=False,
    )

    with pytest.raises(requests.ConnectionError):
        client.get_code("0x" + "11" * 20)
    assert client.session.post.call_count == 1


def test_rpc_error_object_is_not_failed_over():
    client = make_client(
        ["https://rpc.one", "https://rpc.two"],
        rpc_response(error={"code": -32000, "message": "execution reverted"}),
    )

    with pytest.raises(ValueError, match="execution reverted"):
        client.get_code("0x" + "11" * 20)
    assert client.session.post.call_count == 1


def test_all_endpoints_failing_raises_last_error():
    client = make_client(
        ["https://rpc.one", "https://rpc.two"],
        requests.ConnectionError("one down"),
        requests.Timeout("two slow"),
    )

    with pytest.raises(requests.Timeout):
        client.get_code("0x" + "11" * 20)


def test_unexpected_result_is_rejected():
    client = make_client(["https://rpc.one"], rpc_response(12))

    with pytest.raises(ValueError):
        client.get_code("0x" + "11" * 20)
