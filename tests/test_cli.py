"""
Tests for the ahub_remediate command-line entry point.
"""
import os
import sys
from unittest.mock import Mock, patch

import pytest
from azure.core.exceptions import ClientAuthenticationError

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import ahub_remediate
from lib.config import ENV_VAR_MAPPING
from lib.gateway import SubscriptionListingError
from lib.models import RunReport, UpdateResult

SUB_ID = "11111111-2222-3333-4444-555555555555"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for env_var in ENV_VAR_MAPPING.values():
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))


@pytest.fixture
def mock_azure():
    with patch('ahub_remediate.DefaultAzureCredential') as mock_cred, \
            patch('ahub_remediate.AzureGateway') as mock_gateway, \
            patch('ahub_remediate.run_remediation') as mock_run, \
            patch('ahub_remediate.setup_logging') as mock_logging:
        yield Mock(credential=mock_cred, gateway=mock_gateway, run=mock_run, logging=mock_logging)


def make_report():
    result = UpdateResult(
        timestamp="2024-05-01 10:00:00",
        vm_name="vm1",
        resource_group="rg-app",
        subscription_name="prod",
        subscription_id=SUB_ID,
        applied="OS+SQL",
        status="Success",
        message="OS license updated from 'None' to 'Windows_Server'",
    )
    return RunReport(vm_count=1, results=[result])


# =============================================================================
# Argument parsing
# =============================================================================

class TestBuildParser:
    """Tests for argument validation."""

    def test_valid_arguments(self):
        args = ahub_remediate.build_parser().parse_args(
            ['--subscription-ids', SUB_ID, '--throttle-limit', '20', '--mode', 'sql', '--dry-run']
        )

        assert args.subscription_ids == [SUB_ID]
        assert args.throttle_limit == 20
        assert args.mode == "SQL"
        assert args.dry_run is True

    def test_defaults_left_unset(self):
        args = ahub_remediate.build_parser().parse_args([])

        assert args.subscription_ids is None
        assert args.throttle_limit is None
        assert args.mode is None
        assert args.dry_run is False

    @pytest.mark.parametrize("argv", [
        ['--throttle-limit', '0'],
        ['--throttle-limit', '51'],
        ['--mode', 'Windows'],
        ['--subscription-ids', 'prod-subscription'],
    ])
    def test_invalid_arguments_exit_2(self, argv):
        with pytest.raises(SystemExit) as exc_info:
            ahub_remediate.build_parser().parse_args(argv)
        assert exc_info.value.code == 2


# =============================================================================
# main
# =============================================================================

class TestMain:
    """Tests for the main entry point."""

    def test_generate_config(self, capsys, mock_azure):
        ahub_remediate.main(['--generate-config'])

        assert "throttle_limit:" in capsys.readouterr().out
        mock_azure.run.assert_not_called()

    def test_successful_run(self, tmp_path, capsys, mock_azure):
        mock_azure.run.return_value = make_report()

        ahub_remediate.main(['--mode', 'Both', '--throttle-limit', '5', '--output', str(tmp_path)])

        kwargs = mock_azure.run.call_args.kwargs
        assert kwargs['mode'] == "Both"
        assert kwargs['throttle_limit'] == 5
        assert kwargs['dry_run'] is False
        assert mock_azure.run.call_args.args[0] is mock_azure.gateway.return_value

        reports = list(tmp_path.glob("ahub_license_report_*.csv"))
        assert len(reports) == 1
        assert "vm1" in reports[0].read_text()
        assert "Report:" in capsys.readouterr().out

    def test_dry_run_from_env(self, tmp_path, mock_azure, monkeypatch):
        monkeypatch.setenv("AHUB_DRY_RUN", "true")
        mock_azure.run.return_value = RunReport(dry_run=True)

        ahub_remediate.main(['--output', str(tmp_path)])

        assert mock_azure.run.call_args.kwargs['dry_run'] is True

    def test_empty_run_still_writes_report(self, tmp_path, mock_azure):
        mock_azure.run.return_value = RunReport()

        ahub_remediate.main(['--output', str(tmp_path)])

        assert len(list(tmp_path.glob("ahub_license_report_*.csv"))) == 1

    def test_fatal_error_exits_1(self, tmp_path, mock_azure, caplog):
        error = SubscriptionListingError("Unable to retrieve subscriptions: refresh token expired")
        error.__cause__ = ClientAuthenticationError("AADSTS700082: refresh token expired")
        mock_azure.run.side_effect = error

        with pytest.raises(SystemExit) as exc_info:
            ahub_remediate.main(['--output', str(tmp_path)])

        assert exc_info.value.code == 1
        assert "aborting before any VM work" in caplog.text
        assert "Check your Azure credentials" in caplog.text
        assert list(tmp_path.glob("ahub_license_report_*.csv")) == []
        mock_azure.gateway.return_value.close.assert_called_once()

    def test_later_failure_not_reported_as_listing(self, tmp_path, mock_azure, caplog):
        mock_azure.run.side_effect = RuntimeError("report assembly failed")

        with pytest.raises(SystemExit) as exc_info:
            ahub_remediate.main(['--output', str(tmp_path)])

        assert exc_info.value.code == 1
        assert "Run failed: report assembly failed" in caplog.text
        assert "aborting before any VM work" not in caplog.text
        assert "Check your Azure credentials" not in caplog.text

    def test_gateway_closed_after_run(self, tmp_path, mock_azure):
        mock_azure.run.return_value = RunReport()

        ahub_remediate.main(['--output', str(tmp_path)])

        mock_azure.gateway.return_value.close.assert_called_once()

    def test_invalid_config_file_exits_2(self, tmp_path, mock_azure):
        with pytest.raises(SystemExit) as exc_info:
            ahub_remediate.main(['--config', str(tmp_path / "missing.yaml")])

        assert exc_info.value.code == 2
        mock_azure.run.assert_not_called()


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
