"""Unit tests for CredentialManager."""
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from livecount.exceptions import AuthExchangeError, RefreshFailed, TokenInvalid
from livecount.ingest.auth import AUTHORIZE_URL, TOKEN_URL, VALIDATE_URL, CredentialManager


class FakeTwitchId:
    """Minimal id.twitch.tv: token exchange and validation."""

    def __init__(self, token_status=200, token_body=None, validate_status=200, validate_client="client-abc"):
        self.token_status = token_status
        self.token_body = token_body if token_body is not None else {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": 14400,
            "scope": ["channel:read:subscriptions", "moderator:read:followers"],
            "token_type": "bearer",
        }
        self.validate_status = validate_status
        self.validate_client = validate_client
        self.token_requests = []
        self.validate_requests = []

    def __call__(self, request):
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        if url == TOKEN_URL:
            self.token_requests.append(parse_qs(request.content.decode()))
            return httpx.Response(self.token_status, json=self.token_body)
        if url == VALIDATE_URL:
            self.validate_requests.append(request)
            if self.validate_status != 200:
                return httpx.Response(self.validate_status, json={"status": 401, "message": "invalid access token"})
            return httpx.Response(
                200,
                json={
                    "client_id": self.validate_client,
                    "login": "streamer",
                    "scopes": ["moderator:read:followers"],
                    "user_id": "1001",
                    "expires_in": 14000,
                },
            )
        return httpx.Response(404)


def make_manager(fake):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    manager = CredentialManager(
        "client-abc", "secret-xyz", "http://localhost:8000/auth/login", http_client=client
    )
    return manager, client


@pytest.mark.unit
class TestBeginAuthorization:
    def test_returns_authorize_url_without_code(self):
        manager = CredentialManager("client-abc", "secret", "http://localhost/cb")
        url = manager.begin_authorization(["channel:read:subscriptions", "moderator:read:followers"])
        parsed = urlparse(url)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == AUTHORIZE_URL
        query = parse_qs(parsed.query)
        assert query["client_id"] == ["client-abc"]
        assert query["redirect_uri"] == ["http://localhost/cb"]
        assert query["response_type"] == ["code"]
        assert query["scope"] == ["channel:read:subscriptions moderator:read:followers"]

    def test_returns_none_when_code_present(self):
        manager = CredentialManager("client-abc", "secret", "http://localhost/cb")
        assert manager.begin_authorization(code="abc") is None

    def test_state_is_passed_through(self):
        manager = CredentialManager("client-abc", "secret", "http://localhost/cb")
        query = parse_qs(urlparse(manager.begin_authorization([], state="nonce")).query)
        assert query["state"] == ["nonce"]


@pytest.mark.unit
@pytest.mark.asyncio
class TestCompleteAuthorization:
    async def test_exchanges_code_and_validates(self):
        fake = FakeTwitchId()
        manager, client = make_manager(fake)
        credential = await manager.complete_authorization("the-code")
        await client.aclose()

        assert credential.access_token == "new-access"
        assert credential.refresh_token == "new-refresh"
        assert credential.broadcaster_id == "1001"
        assert credential.login == "streamer"
        assert manager.credential == credential

        form = fake.token_requests[0]
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["the-code"]
        assert form["redirect_uri"] == ["http://localhost:8000/auth/login"]
        assert form["client_id"] == ["client-abc"]
        assert form["client_secret"] == ["secret-xyz"]
        assert fake.validate_requests[0].headers["Authorization"] == "Bearer new-access"

    async def test_code_is_never_exchanged_twice(self):
        fake = FakeTwitchId()
        manager, client = make_manager(fake)
        first = await manager.complete_authorization("the-code")
        second = await manager.complete_authorization("the-code")
        await client.aclose()

        assert first is second
        assert len(fake.token_requests) == 1

    async def test_non_2xx_exchange_raises_auth_exchange_error(self):
        fake = FakeTwitchId(token_status=400, token_body={"status": 400, "message": "Invalid authorization code"})
        manager, client = make_manager(fake)
        with pytest.raises(AuthExchangeError) as exc_info:
            await manager.complete_authorization("bad")
        await client.aclose()

        assert exc_info.value.status_code == 400
        assert manager.credential is None
        assert fake.validate_requests == []

    async def test_missing_access_token_raises_auth_exchange_error(self):
        manager, client = make_manager(FakeTwitchId(token_body={"refresh_token": "r"}))
        with pytest.raises(AuthExchangeError):
            await manager.complete_authorization("code")
        await client.aclose()
        assert manager.credential is None

    async def test_rejected_validation_raises_token_invalid(self):
        manager, client = make_manager(FakeTwitchId(validate_status=401))
        with pytest.raises(TokenInvalid):
            await manager.complete_authorization("code")
        await client.aclose()
        assert manager.credential is None

    async def test_token_for_other_client_is_invalid(self):
        manager, client = make_manager(FakeTwitchId(validate_client="someone-else"))
        with pytest.raises(TokenInvalid):
            await manager.complete_authorization("code")
        await client.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
class TestRefreshAccessToken:
    async def test_refresh_replaces_credential(self):
        fake = FakeTwitchId()
        manager, client = make_manager(fake)
        credential = await manager.refresh_access_token("old-refresh")
        await client.aclose()

        assert credential.access_token == "new-access"
        assert credential.refresh_token == "new-refresh"
        assert credential.broadcaster_id == "1001"
        form = fake.token_requests[0]
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["old-refresh"]

    async def test_unrotated_refresh_token_is_kept(self):
        fake = FakeTwitchId(token_body={"access_token": "new-access"})
        manager, client = make_manager(fake)
        credential = await manager.refresh_access_token("old-refresh")
        await client.aclose()
        assert credential.refresh_token == "old-refresh"

    async def test_defaults_to_current_refresh_token(self):
        fake = FakeTwitchId()
        manager, client = make_manager(fake)
        await manager.refresh_access_token("first")
        await manager.refresh_access_token()
        await client.aclose()
        assert fake.token_requests[1]["refresh_token"] == ["new-refresh"]

    async def test_non_2xx_raises_refresh_failed(self):
        manager, client = make_manager(FakeTwitchId(token_status=400, token_body={"message": "Invalid refresh token"}))
        with pytest.raises(RefreshFailed):
            await manager.refresh_access_token("bad")
        await client.aclose()
        assert manager.credential is None

    async def test_missing_access_token_raises_refresh_failed(self):
        manager, client = make_manager(FakeTwitchId(token_body={}))
        with pytest.raises(RefreshFailed):
            await manager.refresh_access_token("r")
        await client.aclose()

    async def test_without_any_refresh_token_raises(self):
        manager, client = make_manager(FakeTwitchId())
        with pytest.raises(RefreshFailed):
            await manager.refresh_access_token()
        await client.aclose()

    async def test_failed_refresh_leaves_previous_credential(self):
        fake = FakeTwitchId()
        manager, client = make_manager(fake)
        previous = await manager.refresh_access_token("r")
        fake.validate_status = 401
        with pytest.raises(TokenInvalid):
            await manager.refresh_access_token()
        await client.aclose()
        assert manager.credential is previous


class GarbledTwitchId(FakeTwitchId):
    """Answers 200 with bodies that are not the expected JSON objects."""

    def __init__(self, token_text=None, validate_json=None):
        super().__init__()
        self.token_text = token_text
        self.validate_json = validate_json

    def __call__(self, request):
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        if url == TOKEN_URL and self.token_text is not None:
            self.token_requests.append(parse_qs(request.content.decode()))
            return httpx.Response(200, text=self.token_text)
        if url == VALIDATE_URL and self.validate_json is not None:
            self.validate_requests.append(request)
            return httpx.Response(200, json=self.validate_json)
        return super().__call__(request)


@pytest.mark.unit
@pytest.mark.asyncio
class TestUnreadableResponses:
    async def test_non_json_token_body_raises_auth_exchange_error(self):
        manager, client = make_manager(GarbledTwitchId(token_text="<html>maintenance</html>"))
        with pytest.raises(AuthExchangeError) as exc_info:
            await manager.complete_authorization("code")
        await client.aclose()
        assert exc_info.value.status_code == 200
        assert manager.credential is None

    async def test_non_json_token_body_raises_refresh_failed(self):
        manager, client = make_manager(GarbledTwitchId(token_text="not json"))
        with pytest.raises(RefreshFailed):
            await manager.refresh_access_token("r")
        await client.aclose()

    async def test_json_list_token_body_raises_refresh_failed(self):
        manager, client = make_manager(GarbledTwitchId(token_text="[1, 2]"))
        with pytest.raises(RefreshFailed):
            await manager.refresh_access_token("r")
        await client.aclose()

    async def test_validation_body_without_user_id_raises_token_invalid(self):
        manager, client = make_manager(GarbledTwitchId(validate_json={"client_id": "client-abc"}))
        with pytest.raises(TokenInvalid):
            await manager.complete_authorization("code")
        await client.aclose()
        assert manager.credential is None

    async def test_non_object_validation_body_raises_token_invalid(self):
        manager, client = make_manager(GarbledTwitchId(validate_json=["client-abc"]))
        with pytest.raises(TokenInvalid):
            await manager.validate("some-token")
        await client.aclose()
