import threading
import time

from worker import RunQueue


def test_jobs_are_handled_in_background():
    handled = []
    runs = RunQueue(handled.append, key=lambda job: job)
    runs.start()
    try:
        for sha in ["a", "b", "c"]:
            runs.submit(sha)
        runs.join()
    finally:
        runs.stop(timeout=2)
    assert handled == ["a", "b", "c"]
    assert not runs.running


def test_handler_errors_do_not_kill_the_worker():
    handled = []

    def handler(job):
        if job == "bad":
            raise RuntimeError("boom")
        handled.append(job)

    runs = RunQueue(handler, key=lambda job: job)
    runs.start()
    try:
        runs.submit("bad")
        runs.submit("good")
        runs.join()
    finally:
        runs.stop(timeout=2)
    assert handled == ["good"]


def test_same_key_never_overlaps_across_workers():
    active = {}
    overlaps = []
    lock = threading.Lock()

    def handler(job):
        key, _ = job
        with lock:
            active[key] = active.get(key, 0) + 1
            if active[key] > 1:
                overlaps.append(key)
        time.sleep(0.02)
        with lock:
            active[key] -= 1

    runs = RunQueue(handler, key=lambda job: job[0], workers=4)
    runs.start()
    try:
        for i in range(6):
            runs.submit(("abc1234", i))
        runs.join()
    finally:
        runs.stop(timeout=2)
    assert overlaps == []


def test_different_keys_run_in_parallel():
    both_started = threading.Barrier(2, timeout=2)
    finished = []

    def handler(job):
        both_started.wait()
        finished.append(job)

    runs = RunQueue(handler, key=lambda job: job, workers=2)
    runs.start()
    try:
        runs.submit("A")
        runs.submit("B")
        runs.join()
    finally:
        runs.stop(timeout=2)
    assert sorted(finished) == ["A", "B"]


def test_key_locks_are_dropped_once_idle():
    runs = RunQueue(lambda job: time.sleep(0.01), key=lambda job: job[0], workers=3)
    runs.start()
    try:
        for i in range(9):
            runs.submit((f"sha{i % 3}", i))
        runs.join()
    finally:
        runs.stop(timeout=2)
    assert runs._key_locks == {}
