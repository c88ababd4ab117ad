import httpx
import pytest

from clinic_recon.services.reconcile.errors import NetworkError
from clinic_recon.services.reconcile.platform_profiles import PlatformProfileClient, fetch_profiles


def _client(handler):
    transport = httpx.MockTransport(handler)
    return PlatformProfileClient(
        "https://api.example",
        "token",
        client=httpx.Client(base_url="https://api.example", transport=transport),
    )


def test_get_profile_sends_bearer_token():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"displayName": "Taro", "pictureUrl": "https://img.example/t.png"})

    with _client(handler) as client:
        profile = client.get_profile("U_A")

    assert seen == {"path": "/v2/bot/profile/U_A", "auth": "Bearer token"}
    assert profile == {"platform_uid": "U_A", "display_name": "Taro", "picture_url": "https://img.example/t.png"}


def test_missing_token_is_a_config_error():
    with pytest.raises(RuntimeError):
        PlatformProfileClient("https://api.example", None)


def test_error_status_raises_network_error():
    with _client(lambda request: httpx.Response(404, json={"message": "Not found"})) as client:
        with pytest.raises(NetworkError) as excinfo:
            client.get_profile("U_GONE")
    assert excinfo.value.status_code == 404


def test_fetch_profiles_records_failures_per_uid():
    def handler(request):
        uid = request.url.path.rsplit("/", 1)[-1]
        if uid == "U_BAD":
            return httpx.Response(500)
        return httpx.Response(200, json={"displayName": uid.lower()})

    with _client(handler) as client:
        lookup = fetch_profiles(client, ["U_A", "U_B", "U_BAD", "U_A", None], max_workers=50)

    assert sorted(lookup.profiles) == ["U_A", "U_B"]
    assert lookup.profiles["U_B"]["display_name"] == "u_b"
    assert list(lookup.failures) == ["U_BAD"]


def test_fetch_profiles_with_no_uids_makes_no_calls():
    def handler(request):
        raise AssertionError("unexpected request")

    with _client(handler) as client:
        assert fetch_profiles(client, []).as_dict() == {"profiles": {}, "failures": {}}
