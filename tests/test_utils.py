from datetime import datetime
from pathlib import Path

import pytest

from hcspipe.errors import InsufficientControls, UnknownMethod, error_kind
from hcspipe.utils.config import Settings, load_config
from hcspipe.utils.hashing import config_hash, run_log_name
from hcspipe.utils.logging import get_logger, run_log_path, setup_logger
from hcspipe.utils.wells import format_position, normalize_well_type, parse_position


def test_load_config_reads_yaml(tmp_path):
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(
        "run:\n"
        "  output_dir: out\n"
        "  workers: 4\n"
        "noise_band:\n"
        "  multiplier: 2.5\n"
        "methods:\n"
        "  NBAND_MAD3_STUDY:\n"
        "    min_controls: 5\n"
    )

    data = load_config(cfg_path)
    assert data["run"]["workers"] == 4

    settings = Settings.from_config(data)
    assert settings.workers == 4
    assert settings.nband_multiplier == 2.5
    assert settings.min_controls == 3
    assert settings.summarizer == "hill_lmfit"
    assert settings.db_path == Path("out").resolve() / "hcspipe.sqlite"
    assert settings.options_for("nband_mad3_study") == {"min_controls": 5}
    assert settings.options_for("resp_up") == {}


def test_empty_config_file_gives_defaults(tmp_path):
    cfg_path = tmp_path / "empty.yaml"
    cfg_path.write_text("")
    assert load_config(cfg_path) == {}
    assert Settings.from_config({}).workers == 1


def test_settings_reject_invalid_values():
    with pytest.raises(ValueError):
        Settings.from_config({"run": {"workers": 0}})
    with pytest.raises(ValueError):
        Settings.from_config({"run": {"workers": "many"}})
    with pytest.raises(ValueError):
        Settings.from_config({"noise_band": {"min_controls": 0}})


def test_config_hash_is_order_independent():
    a = {"run": {"workers": 2, "db": "x.sqlite"}, "noise_band": {"multiplier": 3}}
    b = {"noise_band": {"multiplier": 3}, "run": {"db": "x.sqlite", "workers": 2}}
    assert config_hash(a) == config_hash(b)
    assert len(config_hash(a)) == 7
    assert config_hash(a) != config_hash({"run": {"workers": 3}})
    assert config_hash(None) == config_hash({})
    assert config_hash({"run": {"db": Path("x.sqlite")}}) == config_hash({"run": {"db": "x.sqlite"}})


def test_setup_logger_creates_file(tmp_path):
    log_path = tmp_path / "hcspipe.log"
    logger = setup_logger(logfile=log_path, verbose=True)
    child = get_logger("hcspipe.tests")

    child.debug("debug message")
    child.info("info message")

    for handler in logger.handlers:
        flush = getattr(handler, "flush", None)
        if callable(flush):
            flush()

    assert log_path.is_file()
    contents = log_path.read_text()
    assert "info message" in contents


def test_run_log_is_named_after_the_config(tmp_path):
    cfg = {"run": {"output_dir": str(tmp_path)}, "noise_band": {"multiplier": 3.0}}
    started = datetime(2026, 1, 2, 3, 4, 5)
    name = run_log_name(cfg, started)
    assert name == f"2026-01-02T03-04-05__cfg-{config_hash(cfg)}.log"

    path = run_log_path(tmp_path / "outputs", cfg, started)
    assert path == tmp_path / "outputs" / "run_logs" / name
    assert path.parent.is_dir()


def test_setup_logger_replaces_handlers(tmp_path):
    setup_logger()
    logger = setup_logger(logfile=tmp_path / "run.log")
    assert len(logger.handlers) == 2
    assert len(setup_logger().handlers) == 1


@pytest.mark.parametrize("label, expected", [("A01", (1, 1)), ("b3", (2, 3)), ("P24", (16, 24)), ("AA12", (27, 12))])
def test_parse_position(label, expected):
    assert parse_position(label) == expected
    assert parse_position(format_position(*expected)) == expected


def test_parse_position_rejects_garbage():
    with pytest.raises(ValueError):
        parse_position("12A")
    with pytest.raises(ValueError):
        parse_position("A00")


def test_normalize_well_type():
    assert normalize_well_type("Negative Control") == "n"
    assert normalize_well_type(" t ") == "t"
    assert normalize_well_type("positive_control") == "p"
    assert normalize_well_type("blank") is None
    assert normalize_well_type(None) is None


def test_error_kinds():
    assert error_kind(InsufficientControls("x")) == "InsufficientControls"
    assert error_kind(KeyError("x")) == "TransformFailure"
    assert isinstance(UnknownMethod("x"), ValueError)
