"""
Template Renderer - Renders templated step fields against flow variables.

Uses Jinja2 with a silent undefined type, so a reference to a variable that
was never set renders as an empty string instead of raising.

Flow files may use the dotted-reference dialect as well as native Jinja2:

    {{.user_id}}                  -> {{ user_id }}
    {{toUpper .name}}             -> {{ toUpper(name) }}
    {{randString 8}}              -> {{ randString(8) }}
    {{.name | toLower}}           -> {{ toLower(name) }}
    {{index . "api-key"}}         -> {{ index(_root, "api-key") }}
    {{printf "%s-%s" .a .b}}      -> {{ printf("%s-%s", a, b) }}
    {{if eq .env "prod"}}x{{end}} -> {% if eq(env, "prod") %}x{% endif %}
    {{ name | toUpper }}          (native Jinja2, left untouched)

Rendering is fail-soft: when a template cannot be parsed or evaluated, the
original text is returned unchanged so the problem shows up in the request
instead of aborting the run.
"""

import json
import logging
import re
from typing import Any, Callable, Dict, List, Mapping, Optional

from jinja2 import BaseLoader, Environment, Undefined

from ..utils.fixtures import FixtureGenerator
from .builtins import build_builtins, format_plain

logger = logging.getLogger(__name__)


class SilentUndefined(Undefined):
    """Undefined that renders as an empty string instead of raising errors."""

    def _fail_with_undefined_error(self, *args, **kwargs):
        return None

    def __str__(self):
        return ''

    def __iter__(self):
        return iter([])

    def __bool__(self):
        return False

    def __getattr__(self, name):
        if name.startswith('__'):
            raise AttributeError(name)
        return SilentUndefined()

    def __getitem__(self, key):
        return SilentUndefined()


# {{ ... }} actions, keeping the optional whitespace-trim markers
_ACTION = re.compile(r"\{\{(-?)(.*?)(-?)\}\}", re.DOTALL)

_TOKEN = re.compile(
    r"""
    (?P<space>\s+)
    |(?P<dotref>\.[A-Za-z_][A-Za-z0-9_]*)
    |(?P<dot>\.)
    |(?P<number>-?\d+(?:\.\d+)?)
    |(?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<string>"(?:[^"\\]|\\.)*")
    |(?P<raw>`[^`]*`)
    |(?P<pipe>\|)
    |(?P<lparen>\()
    |(?P<rparen>\))
    """,
    re.VERBOSE | re.DOTALL,
)

# Jinja2 name of the whole variable mapping, the dialect's `.`
ROOT_NAME = "_root"

# Dialect names that are Jinja2 keywords
_RESERVED = {"and": "and_", "or": "or_", "not": "not_"}

_LITERALS = {"true": "True", "false": "False"}


def jinja_name(name: str) -> str:
    """Name a dialect function is registered under in the Jinja2 environment."""
    return _RESERVED.get(name, name)


def _tokenize(body: str) -> Optional[List[tuple]]:
    """Split an action body into (kind, text) tokens, or None if it is not the dialect."""
    tokens = []
    pos = 0
    while pos < len(body):
        match = _TOKEN.match(body, pos)
        if not match:
            return None
        kind = match.lastgroup
        if kind != "space":
            tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


def _string_literal(kind: str, text: str) -> str:
    if kind == "raw":
        return json.dumps(text[1:-1])
    try:
        return json.dumps(json.loads(text))
    except ValueError:
        return json.dumps(text[1:-1])


class _PipelineParser:
    """
    Recursive-descent translation of one dialect pipeline.

    A pipeline is commands joined by `|`; a command is a function name
    followed by operands, or a single operand. Operands are `.name`, `.`,
    literals, niladic function names and parenthesized pipelines. The value
    of each command is passed as the final argument of the next.
    """

    def __init__(self, tokens: List[tuple], functions: Mapping[str, Any]):
        self.tokens = tokens
        self.functions = functions
        self.pos = 0

    def parse(self) -> Optional[str]:
        expression = self.pipeline()
        if expression is None or self.pos != len(self.tokens):
            return None
        return expression

    def _peek(self) -> Optional[str]:
        return self.tokens[self.pos][0] if self.pos < len(self.tokens) else None

    def _command_ends(self) -> bool:
        return self._peek() in (None, "pipe", "rparen")

    def pipeline(self) -> Optional[str]:
        expression = self.command(None)
        while expression is not None and self._peek() == "pipe":
            self.pos += 1
            expression = self.command(expression)
        return expression

    def command(self, piped: Optional[str]) -> Optional[str]:
        if self._command_ends():
            return None

        kind, text = self.tokens[self.pos]
        if kind == "ident" and text in self.functions:
            self.pos += 1
            args = []
            while not self._command_ends():
                arg = self.operand()
                if arg is None:
                    return None
                args.append(arg)
            # A piped value becomes the final argument of the next command
            if piped is not None:
                args.append(piped)
            return f"{jinja_name(text)}({', '.join(args)})"

        if piped is not None:
            return None
        value = self.operand()
        if value is None or not self._command_ends():
            return None
        return value

    def operand(self) -> Optional[str]:
        kind, text = self.tokens[self.pos]
        self.pos += 1

        if kind == "dotref":
            return text[1:]
        if kind == "dot":
            return ROOT_NAME
        if kind == "number":
            return text
        if kind in ("string", "raw"):
            return _string_literal(kind, text)
        if kind == "ident":
            if text in _LITERALS:
                return _LITERALS[text]
            if text in self.functions:
                return f"{jinja_name(text)}()"
            return None
        if kind == "lparen":
            inner = self.pipeline()
            if inner is None or self._peek() != "rparen":
                return None
            self.pos += 1
            return f"({inner})"
        return None


def translate_action(body: str, functions: Mapping[str, Any]) -> Optional[str]:
    """
    Translate one dotted-dialect action body into a Jinja2 expression.

    Returns None when the body is not in the dialect (native Jinja2 or
    something unparseable), in which case it is left untouched.
    """
    tokens = _tokenize(body.strip())
    if not tokens:
        return None
    return _PipelineParser(tokens, functions).parse()


def translate_template(template: str, functions: Mapping[str, Any]) -> str:
    """
    Rewrite every dotted-dialect action in a template to Jinja2 syntax.

    Besides expressions this covers `{{if ...}}`, `{{else if ...}}`,
    `{{else}}` and `{{end}}` (as Jinja2 if blocks) and `{{/* comments */}}`.
    Other block actions such as range are left as written, together with
    their `{{end}}`.
    """
    blocks: List[bool] = []

    def statement(match: re.Match, text: str) -> str:
        return "{%" + match.group(1) + " " + text + " " + match.group(3) + "%}"

    def replace(match: re.Match) -> str:
        body = match.group(2).strip()

        if body.startswith("/*") and body.endswith("*/"):
            return ""

        keyword, _, rest = body.partition(" ")
        if keyword == "if" and rest.strip():
            condition = translate_action(rest, functions)
            blocks.append(condition is not None)
            return match.group(0) if condition is None else statement(match, f"if {condition}")
        if keyword in ("range", "with", "block", "define"):
            blocks.append(False)
            return match.group(0)
        if keyword == "else" and blocks and blocks[-1]:
            if not rest.strip():
                return statement(match, "else")
            condition_keyword, _, condition = rest.strip().partition(" ")
            translated = translate_action(condition, functions) if condition_keyword == "if" else None
            return match.group(0) if translated is None else statement(match, f"elif {translated}")
        if body == "end":
            if blocks and blocks.pop():
                return statement(match, "endif")
            return match.group(0)

        translated = translate_action(match.group(2), functions)
        if translated is None:
            return match.group(0)
        return "{{" + match.group(1) + " " + translated + " " + match.group(3) + "}}"

    return _ACTION.sub(replace, template)


def _decode_escapes(value: str) -> str:
    """Decode backslash escapes like \\n or \\t, falling back to the raw text."""
    try:
        return json.loads('"' + value + '"')
    except ValueError:
        return value


def _trim(value: str, cutset: str) -> str:
    return value.strip(cutset) if cutset else value


def _finalize(value: Any) -> Any:
    """Print booleans in lowercase like the rest of the dialect."""
    if isinstance(value, bool):
        return format_plain(value)
    return value


def _text_function(func: Callable) -> Callable:
    """Wrap a function so undefined arguments behave like empty strings."""

    def wrapper(*args):
        return func(*("" if isinstance(arg, Undefined) else arg for arg in args))

    wrapper.__name__ = getattr(func, "__name__", "template_function")
    return wrapper


def build_function_library(fixtures: FixtureGenerator) -> Dict[str, Callable]:
    """
    Build the template function library bound to a fixture generator.

    Args:
        fixtures: Random source for the random* generators

    Returns:
        Dictionary mapping template function names to callables
    """
    functions = {
        "toLower": lambda s: str(s).lower(),
        "toUpper": lambda s: str(s).upper(),
        "trimSpace": lambda s: str(s).strip(),
        "trim": lambda s, cutset: _trim(str(s), str(cutset)),
        "replace": lambda s, old, new: str(s).replace(str(old), str(new)),
        "replaceChar": lambda s, old, new: str(s).replace(_decode_escapes(str(old)), _decode_escapes(str(new))),
        "randString": fixtures.rand_string,
        "randomAddress": fixtures.address,
        "randomCity": fixtures.city,
        "randomColor": fixtures.color,
        "randomCompany": fixtures.company,
        "randomCompanyIndustry": fixtures.company_industry,
        "randomCountry": fixtures.country,
        "randomEmail": fixtures.email,
        "randomInt": fixtures.rand_int,
        "randomJobTitle": fixtures.job_title,
        "randomName": fixtures.name,
        "randomParagraph": fixtures.paragraph,
        "randomPhone": fixtures.phone,
        "randomSentence": fixtures.sentence,
        "randomUUID": fixtures.uuid,
        "randomWebsite": fixtures.website,
        "randomZipCode": fixtures.zip_code,
    }
    return {name: _text_function(func) for name, func in functions.items()}


class TemplateRenderer:
    """
    Renders flow templates against a string-keyed variable mapping.

    Usage:
        renderer = TemplateRenderer(FixtureGenerator(seed=1))
        renderer.render("{{.base}}/users/{{.user_id}}", variables)
    """

    def __init__(self, fixtures: Optional[FixtureGenerator] = None):
        """
        Initialize renderer.

        Args:
            fixtures: Random source for fixture functions (unseeded if omitted)
        """
        self.fixtures = fixtures or FixtureGenerator()
        library = build_function_library(self.fixtures)
        dialect_builtins = {name: _text_function(func) for name, func in build_builtins().items()}
        self.functions = {**dialect_builtins, **library}

        self._env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            undefined=SilentUndefined,
            keep_trailing_newline=True,
            finalize=_finalize,
        )
        self._env.globals.update({jinja_name(name): func for name, func in self.functions.items()})
        self._env.filters.update(library)

    def render(self, template: Optional[str], variables: Optional[Mapping[str, Any]] = None) -> str:
        """
        Render a template, returning the original text if rendering fails.

        Args:
            template: Template text (None or empty renders as "")
            variables: Variable context

        Returns:
            Rendered text with surrounding whitespace removed
        """
        if not template:
            return ""

        source = translate_template(template, self.functions)
        try:
            compiled = self._env.from_string(source)
            context = dict(variables or {})
            context[ROOT_NAME] = dict(context)
            rendered = compiled.render(context)
        except Exception as e:
            logger.debug(f"[template] render failed, keeping raw text: {e}")
            return template

        return rendered.strip()

    def render_list(self, values: Optional[List[str]], variables: Mapping[str, Any]) -> List[str]:
        """Render each value, dropping entries that render to blank text."""
        output = []
        for value in values or []:
            rendered = self.render(value, variables).strip()
            if rendered:
                output.append(rendered)
        return output


_default_renderer: Optional[TemplateRenderer] = None


def render(template: Optional[str], variables: Optional[Mapping[str, Any]] = None) -> str:
    """Render with a shared, unseeded renderer."""
    global _default_renderer
    if _default_renderer is None:
        _default_renderer = TemplateRenderer()
    return _default_renderer.render(template, variables)
