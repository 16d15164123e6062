"""
Tests for configuration and structured logging
"""

import json
import logging
import pytest
from decimal import Decimal

from pydantic import ValidationError

from payroll_loans import config as config_module
from payroll_loans.config import LoanEngineConfig, get_config, reload_config
from payroll_loans.logging_config import JSONFormatter, setup_logging, get_logger, log_action


class TestLoanEngineConfig:
    """Test pydantic-settings configuration"""

    def test_defaults(self):
        config = LoanEngineConfig()

        assert config.default_currency == "MAD"
        assert config.default_insurance_rate == Decimal('0.809')
        assert config.interest_tax_rate == Decimal('0.10')
        assert config.suspension_late_months == 3
        assert config.max_advance_installments == 24
        assert config.overpayment_policy == "cap"
        assert config.default_actor == "system"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PAYROLL_LOANS_OVERPAYMENT_POLICY", "reject")
        monkeypatch.setenv("PAYROLL_LOANS_INTEREST_TAX_RATE", "0.15")
        monkeypatch.setenv("PAYROLL_LOANS_DATABASE_URL", "memory://")

        config = LoanEngineConfig()
        assert config.overpayment_policy == "reject"
        assert config.interest_tax_rate == Decimal('0.15')
        assert config.database_url == "memory://"

    def test_invalid_policy(self):
        with pytest.raises(ValidationError):
            LoanEngineConfig(overpayment_policy="ignore")

    def test_reload_config(self, monkeypatch):
        original = get_config()
        try:
            monkeypatch.setenv("PAYROLL_LOANS_DEFAULT_ACTOR", "batch_job")
            reloaded = reload_config()
            assert reloaded.default_actor == "batch_job"
            assert get_config() is reloaded
        finally:
            config_module.config = original


class TestLogging:
    """Test structured logging helpers"""

    def test_json_formatter(self):
        logger = logging.getLogger("payroll_loans.test")
        record = logger.makeRecord(logger.name, logging.INFO, __name__, 0, "installment paid", (), None)
        record.user_id = "payroll"
        record.action = "pay_installment"
        record.extra = {"amount": "3000.00"}

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "installment paid"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "payroll"
        assert entry["extra"] == {"amount": "3000.00"}
        assert "correlation_id" not in entry

    def test_setup_logging_replaces_handlers(self):
        logger = setup_logging("DEBUG", "payroll_loans.setup_test")
        logger = setup_logging("WARNING", "payroll_loans.setup_test", log_format="text")

        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert get_logger("payroll_loans.setup_test") is logger

    def test_log_action_attaches_fields(self):
        records = []

        class ListHandler(logging.Handler):
            def emit(self, record):
                records.append(record)

        logger = logging.getLogger("payroll_loans.action_test")
        logger.setLevel(logging.INFO)
        logger.addHandler(ListHandler())

        log_action(logger, "info", "loan created", user_id="hr_officer", action="create_loan",
                   resource="loan:1", extra={"principal": "120000"})
        log_action(logger, "debug", "filtered out")

        assert len(records) == 1
        assert records[0].resource == "loan:1"
        assert records[0].extra == {"principal": "120000"}

    def test_setup_logging_uses_configured_defaults(self, monkeypatch):
        monkeypatch.setattr(config_module, "config", LoanEngineConfig(log_level="ERROR", log_format="text"))
        logger = setup_logging(logger_name="payroll_loans.configured_test")

        assert logger.level == logging.ERROR
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
