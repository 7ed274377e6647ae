"""Shared test fixtures."""
import asyncio
from typing import Generator, List, Optional, Sequence, Tuple

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from datahub.models.oplog import OperationLogEntry  # noqa: F401
from datahub.models.records import CollectedTime, WipEntry  # noqa: F401

from datahub.clio.auth import TokenCache
from datahub.clio.client import ClioClient
from datahub.clio.secrets import EnvSecretResolver
from datahub.config import Settings
from datahub.hub import DataHub

TOKEN_URL = "https://clio.test/oauth/token"
API_BASE = "https://clio.test/api/v4"
REPORT_ID = 77

SERVICE_CREDENTIALS = {
    "PBI_CLIO_V1_CLIENTID": "cid",
    "PBI_CLIO_V1_CLIENTSECRET": "csecret",
    "PBI_CLIO_V1_REFRESHTOKEN": "rtok",
}


# ─── Fake Clio ────────────────────────────────────────────────────────────────

class FakeClio:
    """
    In-process stand-in for the Clio token endpoint and the two data APIs,
    served through httpx.MockTransport.

    Knobs:
        activities             raw activities.json items (filtered by date)
        report_data            report_data returned by the report download
        polls_before_ready     download answers 202 this many times first
        api_statuses           queued statuses returned by the next API calls
        api_error_text         plain-text body for forced statuses (JSON error otherwise)
        token_status           status of every token exchange
        token_delay            seconds each token exchange takes
    """

    token_url = TOKEN_URL
    api_base = API_BASE

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.token_calls = 0
        self.activities: List[dict] = []
        self.report_data: dict = {}
        self.polls_before_ready = 0
        self.api_statuses: List[int] = []
        self.api_error_text: Optional[str] = None
        self.token_status = 200
        self.token_delay = 0.0
        self.expires_in = 3600
        self.rotate_refresh_token: Optional[str] = None
        self.report_requested = 0
        self._polls = 0

    # ─── Seeding ──────────────────────────────────────────────────────────────

    def add_activity(self, clio_id: int, day: str, total: float = 10.0, user_id: int = 1) -> dict:
        item = {
            "id": clio_id,
            "date": day,
            "created_at": f"{day}T09:00:00+00:00",
            "updated_at": f"{day}T09:00:00+00:00",
            "type": "TimeEntry",
            "matter": {"id": 500, "display_number": "HLX-00500-00001"},
            "quantity_in_hours": 1.0,
            "note": "Drafting",
            "total": total,
            "price": total,
            "expense_category": None,
            "activity_description": {"id": 9, "name": "Drafting"},
            "user": {"id": user_id},
            "bill": None,
            "billed": False,
        }
        self.activities.append(item)
        return item

    def add_payment(
        self,
        matter_id: int,
        payment_date: str,
        items: Sequence[Tuple[int, float, int]],
        bill_id: int = 900,
    ) -> None:
        """items: (line item id, payment_allocated, user_id) triples."""
        self.report_data[str(matter_id)] = {
            "bill_data": {"bill_id": bill_id},
            "matter_payment_data": {
                "matter_id": matter_id,
                "contact_id": 31,
                "date": payment_date,
            },
            "line_items_data": {
                "line_items": [
                    {
                        "id": item_id,
                        "date": payment_date,
                        "kind": "Service",
                        "type": "TimeEntry",
                        "activity_type": "Hourly",
                        "description": "Advice",
                        "sub_total": amount,
                        "tax": 0,
                        "secondary_tax": 0,
                        "payment_allocated": amount,
                        "user_id": user_id,
                        "user_name": f"User {user_id}",
                    }
                    for item_id, amount, user_id in items
                ]
            },
        }

    # ─── Transport ────────────────────────────────────────────────────────────

    @property
    def api_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if str(r.url) != TOKEN_URL]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == TOKEN_URL:
            return await self._token(request)

        if self.api_statuses:
            status = self.api_statuses.pop(0)
            if self.api_error_text is not None:
                return httpx.Response(status, text=self.api_error_text)
            return httpx.Response(status, json={"error": {"message": f"forced {status}"}})

        path = request.url.path
        if path.endswith("/activities.json"):
            return self._activities(request)
        if path.endswith("/reports.json"):
            self.report_requested += 1
            if not self.report_data:
                return httpx.Response(422, text="There is no data to report on")
            self._polls = 0
            return httpx.Response(201, json={"data": {"id": REPORT_ID}})
        if path.endswith(f"/reports/{REPORT_ID}/download"):
            self._polls += 1
            if self._polls <= self.polls_before_ready:
                return httpx.Response(202, json={})
            return httpx.Response(200, json={"report_data": self.report_data})
        return httpx.Response(404, json={"error": "not found"})

    async def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_calls += 1
        if self.token_delay:
            await asyncio.sleep(self.token_delay)
        if self.token_status != 200:
            return httpx.Response(self.token_status, text='{"error":"invalid_grant"}')
        body = {"access_token": f"tok-{self.token_calls}", "expires_in": self.expires_in}
        if self.rotate_refresh_token:
            body["refresh_token"] = self.rotate_refresh_token
        return httpx.Response(200, json=body)

    def _activities(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        start, end = params["start_date"], params["end_date"]
        offset, limit = int(params["offset"]), int(params["limit"])
        matching = [a for a in self.activities if start <= a["date"] <= end]
        page = matching[offset:offset + limit]
        paging = {"next": f"{API_BASE}/activities.json?offset={offset + limit}"} if offset + limit < len(matching) else {}
        return httpx.Response(200, json={"data": page, "meta": {"paging": paging}})


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="fake_clio")
def fake_clio_fixture() -> FakeClio:
    return FakeClio()


@pytest.fixture(name="http")
def http_fixture(fake_clio) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_clio.handler))


@pytest.fixture(name="service_credentials")
def service_credentials_fixture() -> dict:
    return dict(SERVICE_CREDENTIALS)


@pytest.fixture(name="secrets")
def secrets_fixture() -> EnvSecretResolver:
    return EnvSecretResolver(environ=dict(SERVICE_CREDENTIALS))


@pytest.fixture(name="tokens")
def tokens_fixture(http, secrets) -> TokenCache:
    return TokenCache(http, secrets, token_url=TOKEN_URL)


@pytest.fixture(name="clio_client")
def clio_client_fixture(http, tokens) -> ClioClient:
    return ClioClient(http, tokens, api_base=API_BASE)


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return Settings(
        database_url="sqlite://",
        clio_api_base=API_BASE,
        clio_token_url=TOKEN_URL,
        report_poll_interval_seconds=0.01,
        report_timeout_seconds=1.0,
        shallow_timeout_seconds=1.0,
        deep_timeout_seconds=2.0,
        backfill_pause_seconds=0.0,
        spot_check_users={7: "Jonathan Waters"},
    )


@pytest.fixture(name="hub")
def hub_fixture(engine, clio_client, settings) -> DataHub:
    return DataHub(engine, clio_client, settings)
