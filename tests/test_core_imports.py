import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")


def test_core_imports():
    import chronicle.lifecycle  # noqa: F401
    import chronicle.models  # noqa: F401
    import chronicle.pipeline  # noqa: F401
    import chronicle.services.memory_service  # noqa: F401
    import chronicle.mcp  # noqa: F401
    import app.main  # noqa: F401


def test_pipeline_registers_every_stage(pipeline):
    bus = pipeline.bus
    assert bus.subscribers("memory-created") == ["analyze"]
    assert bus.subscribers("memory-analyzed") == ["embed"]
    assert bus.subscribers("memory-embedded") == ["schedule"]
    assert bus.subscribers("memory-reactivation-scheduled") == ["reactivate"]
    assert bus.subscribers("memory-reactivated") == ["notify"]
    assert bus.subscribers("memory-updated") == ["memory_updated_handler"]
    assert bus.subscribers("memory-deleted") == ["memory_deleted_handler"]
    assert bus.subscribers("track-analytics") == ["analytics_aggregator"]
    assert bus.subscribers("notification-sent") == []


def test_pipeline_status_reports_backlog(pipeline):
    status = pipeline.status()
    assert status["scheduler"]["pending"] == 0
    assert status["bus"] == {"pending": 0, "dead_letters": 0}
    assert status["provider"]["provider"] == "fake"
