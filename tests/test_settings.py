from vehicle_service.runtime import build_sources
from vehicle_service.settings import ServiceSettings


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("SOURCE_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("VEHICLE_RECORD_TTL_DAYS", "0")
    monkeypatch.setenv("DEFAULT_MILEAGE", "12000")
    cfg = ServiceSettings().reconciliation_config()
    assert cfg.source_timeout_seconds == 2.5
    assert cfg.record_ttl_days == 0
    assert cfg.default_mileage == 12000
    assert cfg.source_order == ("registration", "valuation", "running_costs", "history")


def test_sources_built_in_order_and_enabled_by_key(monkeypatch):
    monkeypatch.setenv("DVLA_API_KEY", "")
    monkeypatch.setenv("CHECKCARD_API_KEY", "")
    monkeypatch.setenv("MOT_API_KEY", "mot-key")
    sources = build_sources(ServiceSettings())
    assert [s.name for s in sources] == ["registration", "valuation", "running_costs", "history"]
    assert [s.enabled for s in sources] == [False, False, True, False]
