import json
import logging
from unittest.mock import MagicMock, patch

import pytest

from smbspk import JSONFormatter, build_parser, main, setup_logging
from smbspk.request import Outcome

ELEMENTS = "EPOCH= 2457108.5 EC= .7816 QR= 1.3628"
ARGS = ["-b", "wild2", "2015-Jan-01", "2016-Jan-01", ELEMENTS, "observer@example.org"]


@pytest.fixture
def mock_session():
    with patch("smbspk.Session") as mock_cls:
        mock_instance = MagicMock()
        mock_cls.return_value = mock_instance
        mock_instance.run.return_value = Outcome(
            success=True, reason="Retrieved ./3001234.bsp", path="./3001234.bsp"
        )
        yield mock_cls


class TestArguments:
    def test_positionals_and_mode(self):
        args = build_parser().parse_args(ARGS + ["out.bsp", "--spk-id", "3000001"])
        assert args.binary and not args.transfer
        assert args.elements == ELEMENTS
        assert args.output == "out.bsp"
        assert args.spk_id == "3000001"
        assert args.log_level == "WARNING"

    def test_log_level_case_insensitive(self):
        args = build_parser().parse_args(ARGS + ["--log-level", "debug"])
        assert args.log_level == "DEBUG"


class TestMain:
    def test_no_args_exits_1(self, mock_session, capsys):
        assert main([]) == 1
        assert "usage:" in capsys.readouterr().err
        mock_session.assert_not_called()

    def test_mode_flag_required(self, mock_session):
        assert main(ARGS[1:]) == 1
        mock_session.assert_not_called()

    def test_binary_and_transfer_exclusive(self, mock_session):
        assert main(["-t"] + ARGS) == 1
        mock_session.assert_not_called()

    def test_excess_args_exit_1(self, mock_session):
        assert main(ARGS + ["out.bsp", "extra"]) == 1
        mock_session.assert_not_called()

    def test_invalid_email_exits_1_before_session(
        self, mock_session, capsys, preserve_root_logger
    ):
        assert main(ARGS[:-1] + ["observer"]) == 1
        assert "Invalid e-mail address" in capsys.readouterr().err
        mock_session.assert_not_called()

    def test_bad_environment_exits_1(self, mock_session, monkeypatch, preserve_root_logger):
        monkeypatch.setenv("SMBSPK_PORT", "telnet")
        assert main(ARGS) == 1
        mock_session.assert_not_called()

    def test_success_exits_0(self, mock_session, capsys, preserve_root_logger):
        assert main(ARGS) == 0
        assert "Retrieved ./3001234.bsp" in capsys.readouterr().out
        request = mock_session.call_args[0][0]
        assert request.binary is True
        assert request.label == "wild2"
        assert request.email == "observer@example.org"

    def test_transfer_mode(self, mock_session, preserve_root_logger):
        assert main(["-t"] + ARGS[1:]) == 0
        assert mock_session.call_args[0][0].binary is False

    def test_failed_outcome_exits_1(self, mock_session, capsys, preserve_root_logger):
        mock_session.return_value.run.return_value = Outcome(
            success=False, reason="no response at step 4"
        )
        assert main(ARGS) == 1
        assert "no response at step 4" in capsys.readouterr().err

    def test_trace_written(self, mock_session, tmp_path, preserve_root_logger):
        trace = tmp_path / "trace.json"
        assert main(ARGS + ["--trace", str(trace)]) == 0
        recorder = mock_session.call_args[0][3]
        assert recorder is not None
        assert json.loads(trace.read_text(encoding="utf-8")) == []

    def test_settings_from_environment(self, mock_session, monkeypatch, preserve_root_logger):
        monkeypatch.setenv("SMBSPK_HOST", "127.0.0.1")
        monkeypatch.setenv("SMBSPK_STEP_TIMEOUT", "5")
        assert main(ARGS) == 0
        settings = mock_session.call_args[0][1]
        assert settings.host == "127.0.0.1"
        assert settings.step_timeout == 5.0


class TestLogging:
    def test_setup_logging_sets_level(self, preserve_root_logger, monkeypatch):
        monkeypatch.delenv("SMBSPK_LOG_JSON", raising=False)
        setup_logging("DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_json_logging(self, preserve_root_logger, monkeypatch):
        monkeypatch.setenv("SMBSPK_LOG_JSON", "true")
        setup_logging("INFO")
        root = logging.getLogger()
        assert any(isinstance(h.formatter, JSONFormatter) for h in root.handlers)

    def test_json_formatter_fields(self):
        record = logging.LogRecord(
            "smbspk.dialogue", logging.INFO, __file__, 10, "matched", None, None
        )
        record.session_id = "abcd1234"
        record.step = 5
        record.step_name = "elements-check"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "matched"
        assert entry["level"] == "INFO"
        assert entry["session_id"] == "abcd1234"
        assert entry["step"] == 5
        assert entry["step_name"] == "elements-check"
