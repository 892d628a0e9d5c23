from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import TextLexer, guess_lexer
from pygments.util import ClassNotFound

PLAIN_LANGUAGE = "text"

_FORMATTER = HtmlFormatter(nowrap=True)


def highlight_code(code: str) -> tuple[str, str]:
    """Guess the language of ``code`` and return ``(language, html)``.

    Unrecognised snippets come back as escaped ``text``.
    """
    lexer = TextLexer()
    if code.strip():
        try:
            lexer = guess_lexer(code)
        except ClassNotFound:
            pass

    language = lexer.aliases[0] if lexer.aliases else PLAIN_LANGUAGE
    if isinstance(lexer, TextLexer):
        language = PLAIN_LANGUAGE
    markup = highlight(code, lexer, _FORMATTER)
    # Pygments always terminates output with a newline.
    if not code.endswith("\n") and markup.endswith("\n"):
        markup = markup[:-1]
    return language, markup
