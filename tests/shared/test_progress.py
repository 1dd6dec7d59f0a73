"""Tests for progress module."""

import threading
from unittest.mock import MagicMock

import pytest

from shared.progress import (
    ConsoleProgress,
    OperationCanceled,
    ProgressToken,
    SingleLineRenderer,
    check_canceled,
    is_canceled,
)


class TestSingleLineRenderer:
    """Tests for SingleLineRenderer class."""

    def test_single_line_mode_init(self):
        """Single line mode should be set correctly."""
        renderer = SingleLineRenderer(single_line=True)
        assert renderer.single_line is True
        assert renderer._last_len == 0

    def test_write_line_updates_last_len(self):
        """write_line should update _last_len."""
        renderer = SingleLineRenderer(single_line=True)
        renderer.write_line('test message')
        assert renderer._last_len == len('test message')

    def test_clear_line_resets_last_len(self):
        """clear_line should reset _last_len to 0."""
        renderer = SingleLineRenderer(single_line=True)
        renderer._last_len = 50
        renderer.clear_line()
        assert renderer._last_len == 0

    def test_multi_line_output(self, capsys):
        """Multi-line mode writes one line per message."""
        renderer = SingleLineRenderer(single_line=False)
        renderer.write_line('one')
        renderer.write_line('two')
        assert capsys.readouterr().out == 'one\ntwo\n'


class TestProgressToken:
    """Tests for cooperative cancellation."""

    def test_initially_live(self):
        token = ProgressToken()
        assert not token.is_canceled()
        assert not is_canceled(token)
        check_canceled(token)

    def test_cancel(self):
        token = ProgressToken()
        token.cancel()
        assert token.is_canceled()
        with pytest.raises(OperationCanceled):
            check_canceled(token)

    def test_none_is_never_canceled(self):
        assert not is_canceled(None)
        check_canceled(None)

    def test_cancel_from_other_thread(self):
        token = ProgressToken()
        t = threading.Thread(target=token.cancel)
        t.start()
        t.join()
        assert token.is_canceled()

    def test_first_message_kept(self):
        token = ProgressToken()
        token.set_message('source timed out')
        token.set_message('second')
        assert token.message == 'source timed out'


class TestConsoleProgress:
    """Tests for ConsoleProgress class."""

    def test_renders_on_init(self):
        writer = MagicMock()
        ConsoleProgress(3, label='Tiles', writer=writer)
        writer.clear_line.assert_called_once()
        assert 'Tiles' in writer.write_line.call_args.args[0]
        assert '0/3' in writer.write_line.call_args.args[0]

    def test_step_is_capped(self):
        writer = MagicMock()
        bar = ConsoleProgress(2, writer=writer)
        bar.step(5)
        assert bar.done == 2
        assert '2/2' in writer.write_line.call_args.args[0]

    def test_close_clears(self):
        writer = MagicMock()
        bar = ConsoleProgress(1, writer=writer)
        bar.close()
        assert writer.clear_line.call_count == 2

    def test_format_eta(self):
        bar = ConsoleProgress(1, writer=MagicMock())
        assert bar._format_eta(float('inf')) == '--:--'
        assert bar._format_eta(65) == '01:05'
        assert bar._format_eta(3725) == '01:02:05'
