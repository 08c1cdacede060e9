"""Concurrent refreshes of one refresh token must produce a single winner."""

import threading

from argon2 import PasswordHasher, Type

from claimdesk.service.auth import AuthService
from claimdesk.service.errors import AuthenticationError
from claimdesk.service.passwords import PasswordService
from claimdesk.storage.memory import MemoryStore


def test_only_one_concurrent_refresh_succeeds(settings, clock):
    store = MemoryStore()
    service = AuthService(
        store,
        settings,
        passwords=PasswordService(
            PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
        ),
        clock=clock,
    )
    token = service.register("racer", "racer@example.com", "Abcdef1!")["refresh_token"]

    barrier = threading.Barrier(8)
    results = []
    failures = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            pair = service.refresh(token)
        except AuthenticationError as exc:
            with lock:
                failures.append(exc)
        else:
            with lock:
                results.append(pair)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 1
    assert len(failures) == 7
    session = store.get_session_by_refresh_token(results[0]["refresh_token"])
    assert session is not None and not session.revoked
