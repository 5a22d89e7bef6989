import re

import pytest
import yaml
from click.testing import CliRunner
from encwheel.cli import main

@pytest.fixture
def runner():
    return CliRunner()

def test_addresses_lists_derived_accounts(runner):
    result = runner.invoke(main, ["addresses", "--offset", "42"])
    assert result.exit_code == 0
    for name in ("definition", "raw_circuit", "mempool", "sign_authority", "computation"):
        assert name in result.output

def test_init_finalizes_definition(runner):
    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0
    assert "✓ spin: register -> finalize" in result.output

def test_spin_prints_segment(runner):
    result = runner.invoke(main, ["spin", "-n", "5"])
    assert result.exit_code == 0
    match = re.search(r"segment (\d+)/5", result.output)
    assert match
    assert 1 <= int(match.group(1)) <= 5

def test_concurrent_spins(runner):
    result = runner.invoke(main, ["spin", "--segments", "3", "--spins", "4"])
    assert result.exit_code == 0
    assert result.output.count("✓ offset") == 4

def test_spin_rejects_out_of_range_segments(runner):
    result = runner.invoke(main, ["spin", "-n", "256"])
    assert result.exit_code == 2

def test_explicit_missing_config_is_usage_error(runner, tmp_path):
    result = runner.invoke(main, ["--config", str(tmp_path / "nope.yaml"), "addresses"])
    assert result.exit_code == 2
    assert "Config file not found" in result.output

def test_invalid_config_is_usage_error(runner, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump({"upload_chunk_size": 0}))
    result = runner.invoke(main, ["--config", str(config_path), "init"])
    assert result.exit_code == 2
    assert "upload_chunk_size" in result.output

def test_config_from_home(runner, tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("ENCWHEEL_HOME", str(home))
    (home / "config.yaml").write_text(yaml.dump({"circuit_name": "spin_v2"}))

    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0
    assert "spin_v2" in result.output
