"""Tests for REPL dispatch and entry-point helpers."""

from cli import repl
from cli.main import resolve_log_level
from cli.models import AbandonCommand, SessionsCommand
from uploader.models import UploadSession
from uploader.state_store import JsonFileStateStore


def test_dispatch_routes_to_handler(monkeypatch):
    calls = []
    monkeypatch.setattr(repl, 'handle_abandon', lambda cmd: calls.append(cmd) or 'abandoned')

    assert repl.dispatch_command(AbandonCommand(upload_id='up-1')) == 'abandoned'
    assert calls == [AbandonCommand(upload_id='up-1')]


def test_dispatch_unknown_type():
    assert repl.dispatch_command(object()) == 'Unknown command type: object'


def test_help_is_builtin(capsys):
    assert repl.run_builtin('help') is True
    assert 'Available commands' in capsys.readouterr().out
    assert repl.run_builtin('sessions') is False


def test_saved_session_ids_reads_state_file(monkeypatch, temp_config):
    monkeypatch.setattr(repl, 'get_config', lambda: temp_config)
    store = JsonFileStateStore(temp_config.get_state_file())
    first = UploadSession.create(file_name='a.bin', total_size=10, chunk_size=5, upload_id='first')
    first.created_at = '2024-01-01T00:00:00+00:00'
    second = UploadSession.create(file_name='b.bin', total_size=10, chunk_size=5, upload_id='second')
    second.created_at = '2024-02-01T00:00:00+00:00'
    store.save(second)
    store.save(first)

    assert repl.saved_session_ids() == ['first', 'second']
    assert 'first' in repl.handle_sessions(SessionsCommand(), config=temp_config)


def test_resolve_log_level(monkeypatch):
    monkeypatch.delenv('LOG_LEVEL', raising=False)

    assert resolve_log_level(['vaultlift']) == 'WARNING'
    assert resolve_log_level(['vaultlift', '--debug']) == 'DEBUG'

    monkeypatch.setenv('LOG_LEVEL', 'INFO')
    assert resolve_log_level(['vaultlift']) == 'INFO'
