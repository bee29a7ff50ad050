"""Tests for scripts/run_cancellation_scheduler.py."""

import pytest
import yaml

from membership_kernel.db.engine import reset_engine
from scripts.run_cancellation_scheduler import main


@pytest.fixture
def deploy_config(tmp_path):
    path = tmp_path / "deploy.yaml"
    path.write_text(yaml.safe_dump({
        "database_url": f"sqlite:///{tmp_path / 'membership.db'}",
        "scheduler": {"enabled": False},
    }))
    yield path
    reset_engine()


class TestMain:
    def test_single_pass_on_empty_database(self, deploy_config, capsys):
        exit_code = main(["--config", str(deploy_config), "--once", "--create-tables"])

        assert exit_code == 0
        assert "0 due, 0 executed" in capsys.readouterr().out

    def test_disabled_scheduler_refuses_loop_mode(self, deploy_config, capsys):
        exit_code = main(["--config", str(deploy_config), "--create-tables"])

        assert exit_code == 1
        assert "disabled" in capsys.readouterr().err

    def test_invalid_configuration(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"log_level": "LOUD"}))

        assert main(["--config", str(path), "--once"]) == 1
        assert "invalid configuration" in capsys.readouterr().err
