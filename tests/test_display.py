from datetime import datetime, timedelta, timezone
from decimal import Decimal

from vale_cashback.client.display import (
    EXPIRED_LABEL, QRImage, QRUnavailable, countdown, format_remaining, render,
)
from vale_cashback.client.exchange import PaymentToken

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_token(code="cd" * 16, expires_in=900):
    return PaymentToken(
        id="t1", code=code, amount=Decimal("25.00"), status="pending",
        expires_at=T0 + timedelta(seconds=expires_in),
    )


class FakeClock:
    def __init__(self, now):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)


class TestRender:
    def test_renders_png_for_code(self):
        image = render(make_token())
        assert isinstance(image, QRImage)
        assert image.png.startswith(b"\x89PNG")

    def test_empty_code_is_unavailable(self):
        assert isinstance(render(make_token(code="")), QRUnavailable)
        assert isinstance(render(None), QRUnavailable)


class TestCountdown:
    def test_format(self):
        assert format_remaining(900) == "15:00"
        assert format_remaining(125.7) == "02:05"
        assert format_remaining(-4) == "00:00"

    async def test_ticks_to_expired_and_stops(self):
        clock = FakeClock(T0)
        labels = [label async for label in countdown(make_token(expires_in=3), clock=clock, sleep=clock.sleep)]
        assert labels == ["00:03", "00:02", "00:01", EXPIRED_LABEL]
        assert clock.sleeps == [1.0, 1.0, 1.0]

    async def test_already_expired_yields_once(self):
        clock = FakeClock(T0 + timedelta(hours=1))
        labels = [label async for label in countdown(make_token(), clock=clock, sleep=clock.sleep)]
        assert labels == [EXPIRED_LABEL]

    async def test_restartable_from_datetime(self):
        clock = FakeClock(T0)
        gen = countdown(T0 + timedelta(seconds=61), clock=clock, sleep=clock.sleep)
        assert await gen.__anext__() == "01:01"
        await gen.aclose()
        again = countdown(T0 + timedelta(seconds=61), clock=clock, sleep=clock.sleep)
        assert await again.__anext__() == "01:01"
