"""Tests for app.logging_config — level/format selection and context output."""
import json
import logging
import os
from unittest.mock import patch

import pytest

from app.logging_config import configure_logging, ContextTextFormatter, JSONFormatter


@pytest.fixture(autouse=True)
def _reset_root_logger():
    """Reset root logger state after each test."""
    root = logging.getLogger()
    original_level = root.level
    original_handlers = root.handlers[:]
    yield
    root.setLevel(original_level)
    root.handlers = original_handlers


def _record(msg='hello %s', args=('world',), **extra):
    record = logging.LogRecord(
        name='services.monetization', level=logging.INFO, pathname='', lineno=0,
        msg=msg, args=args, exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------

class TestConfigureLogging:

    def test_default_level_is_info(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop('LOG_LEVEL', None)
            configure_logging()
        assert logging.getLogger().level == logging.INFO

    @pytest.mark.parametrize('raw,expected', [
        ('DEBUG', logging.DEBUG),
        ('warning', logging.WARNING),
        ('NONSENSE', logging.INFO),
    ])
    def test_log_level_from_env(self, raw, expected):
        with patch.dict(os.environ, {'LOG_LEVEL': raw}):
            configure_logging()
        assert logging.getLogger().level == expected

    def test_json_format_produces_parseable_json(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'json'}):
            configure_logging()
        logging.getLogger('services.alerts').info("structured log")
        parsed = json.loads(capsys.readouterr().err.strip())
        assert parsed['level'] == 'INFO'
        assert parsed['logger'] == 'services.alerts'
        assert parsed['message'] == 'structured log'
        assert 'timestamp' in parsed

    def test_json_format_includes_exception(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'json'}):
            configure_logging()
        try:
            raise ValueError("boom")
        except ValueError:
            logging.getLogger('test.exc').error("failed", exc_info=True)
        parsed = json.loads(capsys.readouterr().err.strip())
        assert 'ValueError' in parsed['exception']

    def test_text_format_includes_logger_name(self, capsys):
        with patch.dict(os.environ, {'LOG_FORMAT': 'text'}):
            configure_logging()
        logging.getLogger('routes.privacy').info("hello world")
        output = capsys.readouterr().err
        assert 'routes.privacy' in output
        assert 'hello world' in output

    def test_third_party_loggers_quieted_to_warning(self):
        configure_logging()
        for name in ['urllib3', 'requests', 'rq.worker', 'sqlalchemy.engine']:
            assert logging.getLogger(name).level == logging.WARNING

    def test_no_duplicate_handlers_on_repeated_calls(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

class TestFormatters:

    def test_json_includes_context(self):
        parsed = json.loads(JSONFormatter().format(_record(context={'invoice_id': 'inv-1'})))
        assert parsed['message'] == 'hello world'
        assert parsed['context'] == {'invoice_id': 'inv-1'}

    def test_json_serializes_decimal_context(self):
        from decimal import Decimal
        parsed = json.loads(JSONFormatter().format(_record(context={'amount': Decimal('0.0007')})))
        assert parsed['context']['amount'] == '0.0007'

    def test_text_appends_context_pairs(self):
        line = ContextTextFormatter('%(message)s').format(_record(context={'wallet_id': 'w1'}))
        assert line == 'hello world [wallet_id=w1]'

    def test_text_without_context_is_plain(self):
        assert ContextTextFormatter('%(message)s').format(_record()) == 'hello world'
