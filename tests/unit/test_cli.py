"""
Unit tests for the command line interface (volumebackup/cli.py).
"""

import sys
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from volumebackup.cli import app
from volumebackup.errors import SchedulingError


runner = CliRunner()


@pytest.fixture
def command():
    with patch('volumebackup.cli.configure_logging') as mock_logging, \
            patch('volumebackup.cli.Command') as mock_class:
        instance = mock_class.return_value
        instance.must.side_effect = lambda error: None if error is None else sys.exit(1)
        instance.logging = mock_logging
        yield instance


def test_runs_environment_config_once(command):
    result = runner.invoke(app, [])

    assert result.exit_code == 0
    command.run_as_command.assert_called_once_with('from environment')
    command.run_in_foreground.assert_not_called()
    command.logging.assert_called_once_with(False)


def test_source_option(command):
    result = runner.invoke(app, ['--source', 'postgres_data'])

    assert result.exit_code == 0
    command.run_as_command.assert_called_once_with('postgres_data')


def test_foreground_with_profile(command):
    result = runner.invoke(app, ['--foreground', '--profile', '*/5 * * * *', '--debug'])

    assert result.exit_code == 0
    command.run_in_foreground.assert_called_once_with(profile_cron='*/5 * * * *')
    command.logging.assert_called_once_with(True)


def test_error_exits_non_zero(command):
    command.run_in_foreground.side_effect = SchedulingError('bad expression')

    result = runner.invoke(app, ['--foreground'])

    assert result.exit_code == 1
    error = command.must.call_args[0][0]
    assert isinstance(error, SchedulingError)
