"""Tests for query handling, the interactive loop and the command line entry point."""

from unittest.mock import MagicMock, patch

import pytest
from prompt_toolkit.document import Document

from pieces_cli import (
    ANSI_CLEAR_SCREEN,
    INTERACTIVE_COMMANDS,
    BackendError,
    CommandCompleter,
    PiecesClient,
    answer_query,
    build_query,
    interactive_mode,
    is_coding_query,
    main,
)

from .conftest import strip_ansi


@pytest.fixture
def client():
    mock_client = MagicMock(spec=PiecesClient)
    mock_client.ask.return_value = "# Answer\n* point"
    mock_client.search_links.return_value = []
    return mock_client


def _session(*inputs):
    session = MagicMock()
    session.prompt.side_effect = list(inputs)
    return session


# --- helpers ---

@pytest.mark.parametrize("query", [
    "What is a segmentation fault?",
    "Why does my CODE not compile",
    "python ImportError",
    "how to debug a crash",
])
def test_is_coding_query_matches(query):
    assert is_coding_query(query)


def test_is_coding_query_rejects_general_questions():
    assert not is_coding_query("What is the capital of France?")


def test_build_query_drops_flags_and_slash_tokens():
    words = ["-i", "what", "/tmp/file", "is", "--help", "this", "-v", "--version", "--interactive"]
    assert build_query(words) == "what is this"


def test_build_query_empty():
    assert build_query([]) == ""
    assert build_query(["/only", "/paths"]) == ""


# --- answer_query ---

def test_answer_query_prints_formatted_answer_only_for_general_query(client, capsys):
    answer_query(client, "What is the capital of France?")

    out = strip_ansi(capsys.readouterr().out)
    assert "# Answer" in out
    assert "• point" in out
    client.search_links.assert_not_called()


def test_answer_query_lists_links_for_coding_query(client, capsys):
    client.search_links.return_value = ["https://stackoverflow.com/q/1", "https://stackoverflow.com/q/2"]

    answer_query(client, "What is a segmentation fault?")

    out = strip_ansi(capsys.readouterr().out)
    assert out.index("# Answer") < out.index("Relevant Stack Overflow links:")
    assert "https://stackoverflow.com/q/1\nhttps://stackoverflow.com/q/2" in out


def test_answer_query_reports_no_links(client, capsys):
    answer_query(client, "fix this bug")

    assert "No relevant Stack Overflow links found." in capsys.readouterr().out


def test_answer_query_propagates_backend_error(client):
    client.ask.side_effect = BackendError("down")

    with pytest.raises(BackendError):
        answer_query(client, "fix this bug")
    client.search_links.assert_not_called()


# --- completer ---

def _completions(text):
    completer = CommandCompleter()
    return [c.text for c in completer.get_completions(Document(text), None)]


def test_completer_prefix_match():
    assert _completions("he") == ["help"]
    assert _completions("") == list(INTERACTIVE_COMMANDS)


def test_completer_offers_everything_without_match():
    assert _completions("zzz") == list(INTERACTIVE_COMMANDS)


# --- interactive mode ---

def test_interactive_commands_do_not_hit_backend(client, capsys):
    session = _session("help", " VERSION ", "", "Clear", "exit")

    assert interactive_mode(client, session=session) == 0

    out = capsys.readouterr().out
    assert "Welcome to Pieces CLI Interactive Mode!" in out
    assert "Available commands: exit, help, version, clear, model" in out
    assert "pieces-cli version: 1.0.0" in out
    assert ANSI_CLEAR_SCREEN in out
    assert out.rstrip().endswith("Exiting interactive mode.")
    client.ask.assert_not_called()


def test_interactive_query_is_answered(client, capsys):
    session = _session("  What is a bug?  ", EOFError())

    assert interactive_mode(client, session=session) == 0

    client.ask.assert_called_once_with("What is a bug?")
    client.search_links.assert_called_once_with("What is a bug?")
    out = strip_ansi(capsys.readouterr().out)
    assert "• point" in out
    assert "No relevant Stack Overflow links found." in out


def test_interactive_backend_error_keeps_prompting(client, capsys):
    client.ask.side_effect = [BackendError("unreachable"), "second answer"]
    session = _session("first question", "second question", "exit")

    assert interactive_mode(client, session=session) == 0

    captured = capsys.readouterr()
    assert "Error calling API: unreachable" in captured.err
    assert "second answer" in captured.out
    assert session.prompt.call_count == 3


def test_interactive_ctrl_c_reprompts(client):
    session = _session(KeyboardInterrupt(), "exit")

    assert interactive_mode(client, session=session) == 0
    assert session.prompt.call_count == 2


# --- main ---

def test_main_version_exits_zero(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["--version"])
    assert exc_info.value.code == 0
    assert "pieces-cli version: 1.0.0" in capsys.readouterr().out


def test_main_help_exits_zero(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["-h"])
    assert exc_info.value.code == 0
    assert "--interactive" in capsys.readouterr().out


def test_main_without_query_is_usage_error(capsys):
    assert main([]) == 1
    assert "Please provide a query as an argument." in capsys.readouterr().err


def test_main_slash_only_query_is_usage_error():
    assert main(["/usr/bin"]) == 1


def test_main_end_to_end_coding_query(capsys):
    with patch.object(PiecesClient, "ask", return_value="A segfault is an invalid memory access.") as ask, \
            patch.object(PiecesClient, "search_links", return_value=["https://stackoverflow.com/q/2346806"]):
        assert main(["What", "is", "a", "segmentation", "fault?"]) == 0

    ask.assert_called_once_with("What is a segmentation fault?")
    out = strip_ansi(capsys.readouterr().out)
    assert out.index("A segfault is an invalid memory access.") < out.index("Relevant Stack Overflow links:")
    assert "https://stackoverflow.com/q/2346806" in out


def test_main_end_to_end_no_links(capsys):
    with patch.object(PiecesClient, "ask", return_value="plain answer"), \
            patch.object(PiecesClient, "search_links", return_value=[]):
        assert main(["What is a segmentation fault?"]) == 0

    assert "No relevant Stack Overflow links found." in capsys.readouterr().out


def test_main_backend_error_is_reported(capsys):
    with patch.object(PiecesClient, "ask", side_effect=BackendError("Request failed")):
        assert main(["explain this error"]) == 0

    assert "Error calling API: Request failed" in capsys.readouterr().err


def test_main_model_flag_is_accepted():
    with patch.object(PiecesClient, "ask", return_value="ok") as ask:
        assert main(["-m", "hello", "there"]) == 0
    ask.assert_called_once_with("hello there")


def test_main_api_url_and_interactive(monkeypatch):
    seen = {}

    def fake_interactive(client):
        seen["client"] = client
        return 0

    monkeypatch.setattr("pieces_cli.interactive_mode", fake_interactive)

    assert main(["-i", "--api-url", "http://127.0.0.1:39300/"]) == 0
    assert seen["client"].base_url == "http://127.0.0.1:39300"
    assert seen["client"].show_progress is False


def test_main_flag_between_query_words():
    with patch.object(PiecesClient, "ask", return_value="ok") as ask:
        assert main(["hello", "-m", "world"]) == 0
    ask.assert_called_once_with("hello world")


def test_main_api_url_between_query_words():
    with patch.object(PiecesClient, "ask", return_value="ok") as ask:
        assert main(["what", "is", "--api-url", "http://127.0.0.1:39300", "python"]) == 0
    ask.assert_called_once_with("what is python")


def test_main_unknown_dash_words_stay_in_query():
    with patch.object(PiecesClient, "ask", return_value="ok") as ask:
        assert main(["what", "does", "--force", "do"]) == 0
    ask.assert_called_once_with("what does --force do")
