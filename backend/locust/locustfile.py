"""
Locust Load Test Suite

Run scenarios:
  locust -f locustfile.py --tags concurrency  # Test slot overbooking
  locust -f locustfile.py --tags throughput   # Test availability cache
  locust -f locustfile.py --tags edge         # Test bad input
  locust -f locustfile.py                     # All tests

Bearer tokens are minted here with the API's SECRET_KEY, standing in for
the identity provider. Point SECRET_KEY at the same value the API uses.
"""

import os
import random
from datetime import datetime, timezone, timedelta

from jose import jwt
from locust import HttpUser, task, between, tag, events

SECRET_KEY = os.environ.get("SECRET_KEY", "super-secret-key-change-in-production")
ALGORITHM = os.environ.get("ALGORITHM", "HS256")

# Shared state
SLOT_STARTS = []
CONCURRENCY_SESSION_TYPE_ID = None
CONCURRENCY_CAPACITY = 5
# Far enough ahead to clear the minimum notice, inside the booking window
CONCURRENCY_SLOT = (datetime.now(timezone.utc) + timedelta(days=7)).replace(
    hour=18, minute=0, second=0, microsecond=0
)


def token_headers(user_id: int, role: str = "customer") -> dict:
    token = jwt.encode(
        {"sub": str(user_id), "role": role, "exp": datetime.now(timezone.utc) + timedelta(hours=2)},
        SECRET_KEY,
        algorithm=ALGORITHM,
    )
    return {"Authorization": f"Bearer {token}"}


def random_user_id() -> int:
    return random.randint(100000, 999999)


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"SETUP: slot race at {CONCURRENCY_SLOT.isoformat()} ({CONCURRENCY_CAPACITY} places)")
    print("=" * 60)


class ConcurrencyUser(HttpUser):
    """
    TEST 1: Concurrency - many staff quick-bookings -> 5 places

    Run: locust -f locustfile.py --tags concurrency -u 100 -r 50 --run-time 30s

    After test, verify:
      SELECT COUNT(*) FROM bookings
      WHERE session_type_id = X AND status IN ('pending', 'confirmed');
    Should be <= 5
    """
    wait_time = between(0, 0.1)

    def on_start(self):
        # Staff bookings skip eligibility and templates, so only capacity decides
        self.headers = token_headers(random_user_id(), role="staff")

        if not CONCURRENCY_SESSION_TYPE_ID:
            resp = self.client.post(
                "/api/v1/session-types/",
                json={
                    "name": f"Load Test Group {random.randint(1, 10000)}",
                    "duration_minutes": 60,
                    "capacity": CONCURRENCY_CAPACITY,
                    "price_cents": 0,
                },
                headers=self.headers,
            )
            if resp.status_code == 201:
                globals()["CONCURRENCY_SESSION_TYPE_ID"] = resp.json()["id"]
                print(f"\n✓ Created session type {CONCURRENCY_SESSION_TYPE_ID} with {CONCURRENCY_CAPACITY} places\n")

    @tag("concurrency")
    @task
    def book_last_places(self):
        """All users fight for the same slot."""
        if not CONCURRENCY_SESSION_TYPE_ID:
            return

        with self.client.post(
            "/api/v1/bookings/",
            json={"session_type_id": CONCURRENCY_SESSION_TYPE_ID, "start_time": CONCURRENCY_SLOT.isoformat()},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            if resp.status_code == 201:
                resp.success()
            elif resp.status_code == 409:
                resp.success()  # Expected: slot full or contention
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class ThroughputUser(HttpUser):
    """
    TEST 2: Throughput - availability cache effectiveness

    Run twice:
      1. With Redis: locust -f locustfile.py --tags throughput -u 100 -r 20 --run-time 60s
      2. Without Redis: REDIS_ENABLED=false on the API, run again

    Compare:
      - Avg response time
      - Requests/sec
      - P95/P99 latency
    """
    wait_time = between(0.1, 0.5)

    def on_start(self):
        self.headers = token_headers(random_user_id())

    @tag("throughput", "read")
    @task(10)
    def list_slots_cached(self):
        """Hammer the cached endpoint with the calendar's usual weeks."""
        start = datetime.now(timezone.utc).date() + timedelta(days=7 * random.randint(0, 3))
        self.client.get(
            f"/api/v1/availability/slots?start_date={start}&end_date={start + timedelta(days=6)}",
            headers=self.headers,
            name="/api/v1/availability/slots [cached]",
        )

    @tag("throughput", "read")
    @task(3)
    def check_eligibility(self):
        self.client.get("/api/v1/booking-eligibility", headers=self.headers)

    @tag("throughput")
    @task(1)
    def health_check(self):
        """Monitor system health."""
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    def on_start(self):
        self.headers = token_headers(random_user_id())

    def _expect(self, resp, codes):
        if resp.status_code in codes:
            resp.success()
        else:
            resp.failure(f"Expected {codes}, got {resp.status_code}")

    @tag("edge")
    @task
    def invalid_session_type(self):
        with self.client.post(
            "/api/v1/bookings/",
            json={"session_type_id": 999999, "start_time": CONCURRENCY_SLOT.isoformat()},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, [400, 404])

    @tag("edge")
    @task
    def naive_start_time(self):
        """A start time without an offset is ambiguous."""
        with self.client.post(
            "/api/v1/bookings/",
            json={"session_type_id": 1, "start_time": "2030-01-01T10:00:00"},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, [400, 422])

    @tag("edge")
    @task
    def past_slot(self):
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        with self.client.post(
            "/api/v1/bookings/",
            json={"session_type_id": 1, "start_time": past},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, [400])

    @tag("edge")
    @task
    def huge_slot_range(self):
        with self.client.get(
            "/api/v1/availability/slots?start_date=2030-01-01&end_date=2031-01-01",
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, [400])

    @tag("edge")
    @task
    def malformed_json(self):
        """Send garbage data."""
        with self.client.post(
            "/api/v1/bookings/",
            data="not json at all",
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, [400, 422])

    @tag("edge")
    @task
    def unsigned_webhook(self):
        with self.client.post(
            "/api/v1/payments/webhooks",
            data='{"id": "evt_fake", "type": "invoice.paid"}',
            catch_response=True,
        ) as resp:
            self._expect(resp, [400, 503])

    @tag("edge")
    @task
    def missing_auth(self):
        """Try booking without auth."""
        with self.client.post(
            "/api/v1/bookings/",
            json={"session_type_id": 1, "start_time": CONCURRENCY_SLOT.isoformat()},
            catch_response=True,
        ) as resp:
            self._expect(resp, [401])


class RealisticUser(HttpUser):
    """
    TEST 4: Realistic mixed workload

    Run: locust -f locustfile.py -u 200 -r 20 --run-time 120s

    Simulates real traffic:
      - Mostly browsing the calendar
      - Some eligibility checks and bookings
      - Rare cancellations
    """
    wait_time = between(1, 3)

    def on_start(self):
        self.headers = token_headers(random_user_id())
        self.booking_ids = []
        self.session_type_ids = []
        resp = self.client.get("/api/v1/session-types/", headers=self.headers)
        if resp.status_code == 200:
            self.session_type_ids = [t["id"] for t in resp.json()]

    @task(50)
    def browse_slots(self):
        """Most common: browsing."""
        if not self.session_type_ids:
            return
        resp = self.client.get(
            f"/api/v1/availability/slots?session_type_id={random.choice(self.session_type_ids)}",
            headers=self.headers,
            name="/api/v1/availability/slots?session_type_id={id}",
        )
        if resp.status_code == 200:
            for slot in resp.json().get("slots", []):
                if slot["available"] and slot["start"] not in SLOT_STARTS:
                    SLOT_STARTS.append(slot["start"])

    @task(15)
    def check_eligibility(self):
        self.client.get("/api/v1/booking-eligibility", headers=self.headers)

    @task(10)
    def book_slot(self):
        """Occasional booking. Most load-test customers have nothing to pay with."""
        if not SLOT_STARTS or not self.session_type_ids:
            return
        with self.client.post(
            "/api/v1/bookings/",
            json={"session_type_id": random.choice(self.session_type_ids), "start_time": random.choice(SLOT_STARTS)},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            if resp.status_code == 201:
                self.booking_ids.append(resp.json()["id"])
                resp.success()
            elif resp.status_code in (400, 402, 409):
                resp.success()
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @task(2)
    def cancel_booking(self):
        """Rare: cancel one of our own bookings."""
        if self.booking_ids:
            booking_id = self.booking_ids.pop()
            self.client.post(
                f"/api/v1/bookings/{booking_id}/cancel",
                json={"reason": "load test"},
                headers=self.headers,
                name="/api/v1/bookings/{id}/cancel",
            )
