from types import SimpleNamespace

import worker


def test_health_check_returns_false_on_failure(monkeypatch):
    class BrokenRedis:
        def ping(self):
            raise RuntimeError("boom")

    monkeypatch.setattr(worker, "redis_conn", BrokenRedis())
    assert worker.health_check() is False


def test_unique_worker_name_uses_hostname(monkeypatch):
    monkeypatch.setenv("HOSTNAME", "box1")

    name = worker.get_unique_worker_name()

    assert name.startswith(f"{worker.settings.worker_name}-box1-")
    assert name != worker.get_unique_worker_name()


def test_start_worker_uses_configured_queues(monkeypatch):
    captured = {}

    def fake_setup_observability():
        captured["setup_called"] = True

    queues = [SimpleNamespace(name="merge-request-reviews")]
    monkeypatch.setattr(worker, "get_all_queues", lambda: queues)
    monkeypatch.setattr(worker, "redis_conn", SimpleNamespace(ping=lambda: True))
    monkeypatch.setattr(worker, "setup_observability", fake_setup_observability)
    monkeypatch.setattr(worker, "init_db", lambda: captured.setdefault("db", True))
    monkeypatch.setattr(worker, "cleanup_stale_workers", lambda: None)

    class DummyWorker:
        def __init__(self, queues, connection=None, name=None, worker_ttl=None, **_):
            self.queues = queues
            self.connection = connection
            self.name = name
            self.worker_ttl = worker_ttl
            self.work_called = False
            captured["worker_name"] = name
            captured["ttl"] = worker_ttl

        def work(self, logging_level=None, **_):
            self.work_called = True
            captured["logging_level"] = logging_level
            return True

    monkeypatch.setattr(worker, "SimpleWorker", DummyWorker)
    result = worker.start_worker(run=True)

    assert captured["setup_called"] is True
    assert captured["db"] is True
    assert captured["worker_name"].startswith(worker.settings.worker_name)
    assert result.work_called is True
    assert result.queues == queues
    assert captured["ttl"] == worker.settings.worker_job_timeout + 60


def test_start_worker_pool_sizes_pool_from_settings(monkeypatch):
    captured = {}
    monkeypatch.setattr(worker, "get_all_queues", lambda: ["q"])
    monkeypatch.setattr(worker, "setup_observability", lambda: None)
    monkeypatch.setattr(worker, "init_db", lambda: None)
    monkeypatch.setattr(worker, "cleanup_stale_workers", lambda: None)

    class DummyPool:
        def __init__(self, queues, connection=None, num_workers=1, worker_class=None):
            captured["queues"] = queues
            captured["num_workers"] = num_workers
            captured["worker_class"] = worker_class

        def start(self, logging_level="INFO", **_):
            captured["started"] = logging_level

    monkeypatch.setattr(worker, "WorkerPool", DummyPool)
    worker.start_worker_pool(run=True)

    assert captured["queues"] == ["q"]
    assert captured["num_workers"] == worker.settings.worker_pool_size
    assert captured["worker_class"] is worker.SimpleWorker
    assert captured["started"] == worker.settings.log_level
