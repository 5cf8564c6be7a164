# pieces_cli.py
import argparse
import itertools
import os
import re
import shutil
import sys
import threading
import traceback
from collections import Counter
from types import MappingProxyType
from typing import Dict, List, NamedTuple, Optional, Tuple

import requests
import wcwidth
from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.formatted_text import ANSI
from prompt_toolkit.history import InMemoryHistory
from pygments import highlight
from pygments.formatter import Formatter
from pygments.lexers import TextLexer, get_lexer_by_name, guess_lexer
from pygments.token import Comment, Keyword, Name, Number, Operator, String
from pygments.util import ClassNotFound

__version__ = "1.0.0"

# --- Constants ---
PROG_NAME = "pieces-cli"
DEFAULT_HOST = "localhost"
LINUX_PORT = 5323
DEFAULT_PORT = 1000 # Pieces OS listens here on macOS and Windows
QUESTION_PATH = "/qgpt/question"
STACKEXCHANGE_SEARCH_URL = "https://api.stackexchange.com/2.3/search/advanced"
STACKEXCHANGE_SITE = "stackoverflow"
DEFAULT_SEARCH_TIMEOUT = 15 # seconds
USER_AGENT = f"{PROG_NAME}/{__version__} (+https://pieces.app)"

ANSI_BOLD = '\033[1m'
ANSI_RED = '\033[31m'
ANSI_GREEN = '\033[32m'
ANSI_YELLOW = '\033[33m'
ANSI_BLUE = '\033[34m'
ANSI_MAGENTA = '\033[35m'
ANSI_CYAN = '\033[36m'
ANSI_WHITE = '\033[37m'
ANSI_GRAY = '\033[90m'
ANSI_RESET = '\033[0m'
ANSI_CLEAR_SCREEN = '\033[2J\033[H'
ANSI_EL = '\033[K' # Erase to end of line

SPINNER_FRAMES = ('⣾', '⣽', '⣻', '⢿', '⡿', '⣟', '⣯', '⣷')

CODING_QUERY_RE = re.compile(
    r'code|error|exception|bug|issue|problem|function|method|class|variable|'
    r'syntax|compile|runtime|fault|crash|debug|traceback',
    re.IGNORECASE,
)

INTERACTIVE_COMMANDS = ('exit', 'help', 'version', 'clear', 'model')
QUERY_EXCLUDED_FLAGS = frozenset({'-h', '--help', '-v', '--version', '-i', '--interactive'})


class BackendError(Exception):
    """Raised when Pieces OS cannot produce an answer for a query."""


def default_base_url() -> str:
    """Base URL of the local Pieces OS instance.

    ``PIECES_OS_URL`` wins when set; otherwise the port depends on the host OS.
    """
    env_url = os.environ.get("PIECES_OS_URL", "").strip()
    if env_url:
        return env_url.rstrip('/')
    port = LINUX_PORT if sys.platform.startswith('linux') else DEFAULT_PORT
    return f"http://{DEFAULT_HOST}:{port}"


def env_timeout() -> Optional[float]:
    raw = os.environ.get("PIECES_TIMEOUT", "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        sys.stderr.write(f"Warning: ignoring invalid PIECES_TIMEOUT value {raw!r}.\n")
        return None


def style(text: str, *codes: str) -> str:
    """Wraps text in ANSI codes, unless NO_COLOR is set."""
    if not codes or os.environ.get("NO_COLOR"):
        return text
    return ''.join(codes) + text + ANSI_RESET


# --- HTML cleanup ---
HTML_ENTITIES = MappingProxyType({
    '&quot;': '"',
    '&amp;': '&',
    '&lt;': '<',
    '&gt;': '>',
    '&nbsp;': ' ',
    '&apos;': "'",
    '&cent;': '¢',
    '&pound;': '£',
    '&yen;': '¥',
    '&euro;': '€',
    '&copy;': '©',
    '&reg;': '®',
})

TAG_RE = re.compile(r'<[^>]*>')
ENTITY_RE = re.compile(r'&[a-zA-Z]+;')
WHITESPACE_RE = re.compile(r'\s+')

# Inverse of HTML_ENTITIES for the characters a highlighted token may contain.
_ESCAPE_TABLE = str.maketrans({
    '&': '&amp;',
    '<': '&lt;',
    '>': '&gt;',
    '"': '&quot;',
    "'": '&apos;',
})


def clean_html(raw_html: str) -> str:
    """Strips tags, decodes known entities and collapses whitespace."""
    clean_text = TAG_RE.sub('', raw_html)
    clean_text = ENTITY_RE.sub(lambda m: HTML_ENTITIES.get(m.group(0), m.group(0)), clean_text)
    return WHITESPACE_RE.sub(' ', clean_text).strip()


# --- Syntax highlighting ---
HLJS_SPAN_RE = re.compile(r'<span class="hljs-(\w+)">(.*?)</span>')

HLJS_STYLES = MappingProxyType({
    'keyword': ANSI_BLUE,
    'string': ANSI_GREEN,
    'built_in': ANSI_CYAN,
    'comment': ANSI_GRAY,
    'title': ANSI_YELLOW,
    'params': ANSI_MAGENTA,
    'function': ANSI_RED,
    'operator': ANSI_WHITE,
})

# Most specific token types first: Name.Builtin has to win over the generic fallbacks.
TOKEN_CATEGORIES: Tuple[Tuple[object, str], ...] = (
    (Name.Builtin, 'built_in'),
    (Name.Function, 'title'),
    (Name.Class, 'title'),
    (Name.Decorator, 'meta'),
    (Name.Tag, 'name'),
    (Name.Attribute, 'attr'),
    (Name.Variable, 'variable'),
    (Comment, 'comment'),
    (String, 'string'),
    (Keyword, 'keyword'),
    (Operator, 'operator'),
    (Number, 'number'),
)


def token_category(ttype) -> Optional[str]:
    for parent, category in TOKEN_CATEGORIES:
        if ttype in parent:
            return category
    return None


class HljsFormatter(Formatter):
    """Pygments formatter emitting highlight.js style ``hljs-*`` spans.

    Only whitespace-free tokens with a known category get a span; everything
    else is written as escaped text.
    """
    name = 'hljs'
    aliases = ['hljs']

    def format(self, tokensource, outfile):
        for ttype, value in tokensource:
            category = token_category(ttype)
            if category and value.strip():
                # Spans never cross a line break; trailing newlines go after the span.
                body = value.rstrip('\n')
                outfile.write(f'<span class="hljs-{category}">{body.translate(_ESCAPE_TABLE)}</span>')
                outfile.write(value[len(body):])
            else:
                outfile.write(value.translate(_ESCAPE_TABLE))


def resolve_lexer(code: str, language: str = ''):
    """Lexer for the declared language, falling back to auto-detection."""
    if language:
        try:
            return get_lexer_by_name(language)
        except ClassNotFound:
            pass
    try:
        return guess_lexer(code)
    except ClassNotFound:
        return TextLexer()


def highlight_line(line: str, language: str = '') -> str:
    return highlight(line, resolve_lexer(line, language), HljsFormatter())


def apply_colors(highlighted: str) -> str:
    """Turns hljs spans into ANSI colors and drops any leftover markup."""
    def colorize(match: re.Match) -> str:
        color = HLJS_STYLES.get(match.group(1))
        return style(match.group(2), color) if color else match.group(2)

    return clean_html(HLJS_SPAN_RE.sub(colorize, highlighted))


# --- Response formatting ---
class FormatterState(NamedTuple):
    inside_block: bool = False
    language: str = ''


def format_line(line: str, state: FormatterState) -> Tuple[Optional[str], FormatterState]:
    """Renders one line; returns None for fence lines along with the next state."""
    if line.startswith('```'):
        if state.inside_block:
            return None, FormatterState()
        return None, FormatterState(inside_block=True, language=line[3:].strip())
    if state.inside_block:
        return apply_colors(highlight_line(line, state.language)), state
    if line.startswith('# '):
        return style(line, ANSI_BOLD), state
    if line.startswith('* '):
        return style('• ', ANSI_GREEN) + line[2:], state
    if len(line) >= 4 and line.startswith('**') and line.endswith('**'):
        return style(line[2:-2], ANSI_BOLD), state
    return line, state


def format_response(text: str, state: Optional[FormatterState] = None) -> str:
    if state is None:
        state = FormatterState()
    rendered_lines: List[str] = []
    for line in text.split('\n'):
        rendered, state = format_line(line, state)
        if rendered is not None:
            rendered_lines.append(rendered + '\n')
    return ''.join(rendered_lines)


# --- Progress feedback ---
def truncate_display(text: str, max_cells: int) -> str:
    """Shortens text to at most max_cells terminal cells."""
    width = wcwidth.wcswidth(text)
    if 0 <= width <= max_cells:
        return text
    kept, used = [], 0
    for char in text:
        char_width = max(wcwidth.wcwidth(char), 0)
        if used + char_width > max_cells - 3:
            break
        kept.append(char)
        used += char_width
    return ''.join(kept) + '...'


class Spinner:
    """Single-line progress indicator on stderr.

    Always safe to use: when disabled, or when the stream is not a terminal,
    every method does nothing.
    """

    def __init__(self, text: str, enabled: bool = True, stream=None):
        self.text = text
        self.stream = stream if stream is not None else sys.stderr
        isatty = getattr(self.stream, 'isatty', None)
        self.enabled = enabled and bool(isatty and isatty())
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> 'Spinner':
        if self.enabled:
            self._thread = threading.Thread(target=self._spin, daemon=True)
            self._thread.start()
        return self

    def _spin(self):
        frames = itertools.cycle(SPINNER_FRAMES)
        label = truncate_display(self.text, shutil.get_terminal_size().columns - 2)
        while True:
            self.stream.write(f"\r{ANSI_EL}{label} {next(frames)}")
            self.stream.flush()
            if self._stop.wait(0.1):
                break

    def _finish(self, symbol: str, text: str):
        if not self.enabled:
            return
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        self.stream.write(f"\r{ANSI_EL}{symbol} {text}\n")
        self.stream.flush()

    def succeed(self, text: str):
        self._finish('✅', text)

    def fail(self, text: str):
        self._finish('❌', text)


# --- Backends ---
class PiecesClient:
    """Talks to the local Pieces OS QGPT endpoint and the Stack Exchange search API."""

    def __init__(self, base_url: Optional[str] = None, show_progress: bool = True,
                 timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.base_url = (base_url or default_base_url()).rstrip('/')
        self.show_progress = show_progress
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})

    def _question(self, query: str) -> str:
        payload = {"query": query, "relevant": {"iterable": []}}
        try:
            response = self.session.post(f"{self.base_url}{QUESTION_PATH}", json=payload, timeout=self.timeout)
            response.raise_for_status()
            answers = response.json()["answers"]["iterable"]
        except requests.RequestException as e:
            raise BackendError(f"Request to {self.base_url} failed: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise BackendError(f"Malformed response from {self.base_url}: {e!r}") from e
        if not answers:
            raise BackendError("Pieces OS returned no answers.")
        try:
            text = answers[0]["text"]
        except (KeyError, TypeError) as e:
            raise BackendError(f"Malformed answer from {self.base_url}: {e!r}") from e
        if not isinstance(text, str):
            raise BackendError(f"Malformed answer from {self.base_url}: text is {type(text).__name__}")
        return text

    def ask(self, query: str) -> str:
        spinner = Spinner('Generating response...', enabled=self.show_progress).start()
        try:
            text = self._question(query)
        except BackendError as e:
            spinner.fail('Error generating response.')
            sys.stderr.write(f"{ANSI_RED}Error calling Pieces OS: {e}{ANSI_RESET}\n")
            raise
        spinner.succeed('Response generated.')
        return text

    def search_links(self, query: str) -> List[str]:
        spinner = Spinner('Searching Stack Overflow...', enabled=self.show_progress).start()
        params: Dict[str, str] = {
            'order': 'desc',
            'sort': 'relevance',
            'q': query,
            'site': STACKEXCHANGE_SITE,
        }
        try:
            response = self.session.get(STACKEXCHANGE_SEARCH_URL, params=params, timeout=DEFAULT_SEARCH_TIMEOUT)
            response.raise_for_status()
            links = [item['link'] for item in response.json()['items'] if 'link' in item]
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            spinner.fail('Error searching Stack Overflow.')
            sys.stderr.write(f"{ANSI_RED}Error searching Stack Overflow: {e}{ANSI_RESET}\n")
            return []
        spinner.succeed('Stack Overflow search completed.')
        return links


# --- Query handling ---
def is_coding_query(text: str) -> bool:
    return bool(CODING_QUERY_RE.search(text))


def build_query(words: List[str]) -> str:
    return ' '.join(w for w in words if w not in QUERY_EXCLUDED_FLAGS and not w.startswith('/'))


def answer_query(client: PiecesClient, query: str, out=None):
    """Asks Pieces OS, prints the rendered answer and, for coding questions, related links.

    BackendError from the ask call propagates; the link search never raises.
    """
    out = out if out is not None else sys.stdout
    response = client.ask(query)
    print(format_response(response), file=out)

    if is_coding_query(query):
        links = client.search_links(query)
        if links:
            print(style("\nRelevant Stack Overflow links:", ANSI_BLUE), file=out)
            for link in links:
                print(style(link, ANSI_BLUE), file=out)
        else:
            print(style("\nNo relevant Stack Overflow links found.", ANSI_YELLOW), file=out)
    out.flush()


# --- prompt_toolkit Completer ---
class CommandCompleter(Completer):
    """Completes interactive commands; offers all of them when nothing matches."""

    def get_completions(self, document, complete_event):
        text = document.text_before_cursor
        hits = [c for c in INTERACTIVE_COMMANDS if c.startswith(text)] or list(INTERACTIVE_COMMANDS)
        for command in hits:
            yield Completion(
                text=command,
                start_position=-len(text),
                display=command,
                display_meta="command"
            )


def version_line() -> str:
    return f"{PROG_NAME} version: {__version__}"


def interactive_mode(client: PiecesClient, session=None, out=None) -> int:
    out = out if out is not None else sys.stdout
    if session is None:
        session = PromptSession(history=InMemoryHistory(), completer=CommandCompleter(),
                                complete_while_typing=False)

    print("Welcome to Pieces CLI Interactive Mode!", file=out)
    print("Type 'exit' to quit, 'help' for assistance, 'version' to see the version number, "
          "or 'clear' to clear the screen.", file=out)
    prompt_str = ANSI(ANSI_MAGENTA + f"{PROG_NAME}> " + ANSI_RESET)

    while True:
        try:
            line = session.prompt(prompt_str)
        except KeyboardInterrupt: # Ctrl+C drops the current line only
            continue
        except EOFError: # Ctrl+D
            break

        user_input = line.strip()
        command = user_input.lower()
        if command == 'exit':
            break
        elif command == 'help':
            print("Available commands: " + ', '.join(INTERACTIVE_COMMANDS), file=out)
        elif command == 'version':
            print(version_line(), file=out)
        elif command == 'clear':
            out.write(ANSI_CLEAR_SCREEN)
            out.flush()
        elif not user_input:
            continue
        else:
            try:
                answer_query(client, user_input, out=out)
            except BackendError as e:
                sys.stderr.write(f"Error calling API: {e}\n")

    print("Exiting interactive mode.", file=out)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG_NAME,
        description=f"{ANSI_BOLD}Welcome to Pieces CLI{ANSI_RESET}\n\n"
                    "Ask the local Pieces OS copilot from the command line.",
        epilog="Examples:\n"
               f'  {PROG_NAME} "What is the capital of France?"\n'
               f"  {PROG_NAME} -i\n"
               f"  {PROG_NAME} --help\n"
               f"  {PROG_NAME} --version",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-i', '--interactive', action='store_true', help="Enter interactive mode.")
    parser.add_argument('-v', '--version', action='version', version=version_line(),
                        help="Display the version number.")
    parser.add_argument('-m', '--model', action='store_true',
                        help="Reserved for model selection; currently has no effect.")
    parser.add_argument('--api-url', default=None,
                        help="Base URL of Pieces OS. Defaults to $PIECES_OS_URL or the local port for this OS.")
    parser.add_argument('query', nargs='*', help="Query text. Words starting with '/' are ignored.")
    return parser


def query_words(argv: List[str], words: List[str]) -> List[str]:
    """Puts parsed query words and unknown options back in command line order."""
    remaining = Counter(words)
    ordered = []
    for token in argv:
        if remaining[token] > 0:
            ordered.append(token)
            remaining[token] -= 1
    return ordered


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    parser = build_parser()
    # Flags may appear anywhere; unknown dash words belong to the query.
    args, unknown = parser.parse_known_intermixed_args(argv)

    client = PiecesClient(base_url=args.api_url, show_progress=not args.interactive, timeout=env_timeout())

    try:
        if args.interactive:
            return interactive_mode(client)

        query = build_query(query_words(argv, args.query + unknown))
        if not query:
            sys.stderr.write("Please provide a query as an argument.\n")
            return 1

        try:
            answer_query(client, query)
        except BackendError as e:
            sys.stderr.write(f"Error calling API: {e}\n")
        return 0
    except KeyboardInterrupt:
        sys.stderr.write(ANSI_RESET + "\nExiting due to KeyboardInterrupt.\n")
        return 130
    except Exception as e:
        sys.stderr.write(f"\n{ANSI_RESET}Unexpected error: {e}\n"); traceback.print_exc(file=sys.stderr)
        return 1
    finally:
        sys.stderr.flush(); sys.stdout.flush()


if __name__ == '__main__':
    sys.exit(main())
