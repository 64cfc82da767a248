import pytest

from app.services.rate_limit import TokenBucketLimiter, get_limiter


def test_bucket_refills_after_interval():
    now = [0.0]
    limiter = TokenBucketLimiter(capacity=2, interval_seconds=60, clock=lambda: now[0])

    assert limiter.consume("ip").allowed
    assert limiter.consume("ip").allowed
    blocked = limiter.consume("ip")
    assert not blocked.allowed
    assert blocked.retry_after_seconds == pytest.approx(60)

    now[0] = 30
    assert limiter.consume("ip").retry_after_seconds == pytest.approx(30)

    now[0] = 61
    assert limiter.consume("ip").allowed


def test_keys_are_independent():
    limiter = TokenBucketLimiter(capacity=1)
    assert limiter.consume("a").allowed
    assert limiter.consume("b").allowed
    assert not limiter.consume("a").allowed


@pytest.mark.anyio
async def test_initiate_is_rate_limited_per_ip(client, fake_mpesa, make_invoice):
    invoice = make_invoice()
    body = {"publicInvoiceId": invoice.public_id, "phoneNumber": "0812345678"}

    codes = [(await client.post("/payments/initiate", json=body)).status_code for _ in range(6)]

    assert codes[:5] == [400] * 5
    assert codes[5] == 429
    limited = await client.post("/payments/initiate", json=body)
    assert limited.json()["error"]["code"] == "RATE_LIMITED"
    assert int(limited.headers["retry-after"]) >= 1


@pytest.mark.anyio
async def test_rate_limit_uses_forwarded_client_ip(client, fake_mpesa, make_invoice):
    invoice = make_invoice()
    body = {"publicInvoiceId": invoice.public_id, "phoneNumber": "0812345678"}

    for _ in range(5):
        await client.post("/payments/initiate", json=body, headers={"X-Forwarded-For": "41.90.1.1"})
    other = await client.post("/payments/initiate", json=body, headers={"X-Forwarded-For": "41.90.1.2"})
    assert other.status_code == 400


@pytest.mark.parametrize(
    ("name", "capacity"),
    [("payment", 5), ("public_read", 60), ("invoice_create", 30), ("private_crud", 120)],
)
def test_default_capacities(name, capacity):
    assert get_limiter(name).capacity == capacity


@pytest.mark.anyio
async def test_invoice_creation_is_rate_limited(client):
    body = {
        "fromName": "Duka Moja",
        "toName": "Acme Ltd",
        "items": [{"description": "Design", "quantity": "1", "rate": "100"}],
    }
    headers = {"X-User-Id": "busy-user"}

    codes = [(await client.post("/invoices", json=body, headers=headers)).status_code for _ in range(31)]

    assert codes[:30] == [201] * 30
    assert codes[30] == 429


@pytest.mark.anyio
async def test_private_reads_share_one_budget(client):
    headers = {"X-User-Id": "busy-user"}
    for _ in range(60):
        await client.get("/invoices", headers=headers)
    for _ in range(60):
        await client.get("/invoices/stats", headers=headers)

    limited = await client.get("/invoices/missing", headers=headers)
    assert limited.status_code == 429
    assert limited.json()["error"]["code"] == "RATE_LIMITED"
