import json
from typing import Any, Dict

from flask import Flask

from partner_portal.sync import get_celery_app, init_sync
from partner_portal.sync.celery_app import DEFAULT_QUEUE_NAME
from partner_portal.sync.tasks import RUN_TASK_NAME

EAGER = {"task_always_eager": True, "task_eager_propagates": True}


def build_sync_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with the sync engine enabled for worker tests.
    """
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
    else:
        app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        SYNC_ENABLED=True,
    )
    app.config.update(overrides)
    init_sync(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_sync_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(instance_dir),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1


def test_celery_config_accepts_json_string(tmp_path):
    app = build_sync_app(
        INSTANCE_PATH=str(tmp_path),
        CELERY_CONFIG=json.dumps({"task_always_eager": True, "task_time_limit": 600}),
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.task_always_eager is True
    assert celery_app.conf.task_time_limit == 600
    assert celery_app.conf.broker_url.endswith("celery.sqlite")


def test_disabled_engine_has_no_celery_app():
    app = build_sync_app(SYNC_ENABLED=False)

    assert get_celery_app(app) is None


def test_tasks_are_registered(tmp_path):
    app = build_sync_app(INSTANCE_PATH=str(tmp_path), CELERY_CONFIG=EAGER)

    celery_app = get_celery_app(app)
    assert {"sync.healthcheck", RUN_TASK_NAME, "sync.scheduler_tick"} <= set(celery_app.tasks.keys())


def test_worker_ping_cli(tmp_path):
    app = build_sync_app(
        INSTANCE_PATH=str(tmp_path),
        SYNC_WORKER_ENABLED=True,
        CELERY_CONFIG=EAGER,
    )

    runner = app.test_cli_runner()
    with app.app_context():
        result = runner.invoke(args=["sync", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(tmp_path, monkeypatch):
    app = build_sync_app(
        INSTANCE_PATH=str(tmp_path),
        SYNC_WORKER_ENABLED=True,
        CELERY_CONFIG=EAGER,
    )
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    runner = app.test_cli_runner()
    with app.app_context():
        result = runner.invoke(
            args=[
                "sync",
                "worker",
                "run",
                "--loglevel",
                "debug",
                "--concurrency",
                "2",
                "--pool",
                "solo",
                "--queues",
                "partner-sync",
                "--beat",
            ]
        )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "partner-sync",
        "--concurrency",
        "2",
        "--pool",
        "solo",
        "--beat",
    ]


def test_worker_group_warns_when_worker_disabled(tmp_path, monkeypatch):
    app = build_sync_app(INSTANCE_PATH=str(tmp_path), CELERY_CONFIG=EAGER)
    monkeypatch.setattr(get_celery_app(app), "worker_main", lambda argv=None: None)

    runner = app.test_cli_runner()
    with app.app_context():
        result = runner.invoke(args=["sync", "worker", "run"])

    assert result.exit_code == 0, result.output
    assert "SYNC_WORKER_ENABLED is false" in result.output


def test_run_scheduled_task_executes_eagerly(sync_app):
    celery_app = get_celery_app(sync_app)

    payload = celery_app.tasks[RUN_TASK_NAME].apply_async(kwargs={"task_type": "cleanup"}).get(timeout=5)

    assert payload["task_type"] == "cleanup"
    assert payload["status"] == "completed"
    assert payload["summary"]["locks_cleared"] == 0
