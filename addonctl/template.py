"""Jinja2 rendering of policy, values and manifest templates.

Rendering is strict: undefined variables fail, interpolated values are
checked against a structurally safe scalar alphabet, strings that YAML would
resolve to another type stay strings, and YAML/JSON output is parsed back
before it is returned.
"""

import json
import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Literal

import jinja2
import yaml
from jinja2 import StrictUndefined, Undefined

from addonctl.errors import TemplateError

DocumentFormat = Literal["yaml", "json", "text"]

# Plain YAML scalar characters that also survive inside double quotes and
# IAM ARNs. No whitespace, quotes, comment or flow indicators.
_SAFE_SCALAR = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9._/@=+*-]|:(?!$))*$")


@dataclass(frozen=True)
class TextTemplate:
    """A template source and the document format it renders to."""

    source: str
    format: DocumentFormat = "yaml"
    name: str = "<template>"


class _Literals:
    """Strings that YAML would read back as another type (``0123``, ``true``, ``null``).

    They are swapped for placeholders while rendering and put back once the
    document has been parsed, so they always come out as strings.
    """

    def __init__(self) -> None:
        self._token = uuid.uuid4().hex
        self._by_value: dict[str, str] = {}

    def __bool__(self) -> bool:
        return bool(self._by_value)

    def hold(self, value: str) -> str:
        if value not in self._by_value:
            self._by_value[value] = f"addonctl{self._token}x{len(self._by_value)}x"
        return self._by_value[value]

    def restore_text(self, text: str) -> str:
        for value, placeholder in self._by_value.items():
            text = text.replace(placeholder, value)
        return text

    def restore(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {self.restore(k): self.restore(v) for k, v in node.items()}
        if isinstance(node, list):
            return [self.restore(v) for v in node]
        if isinstance(node, str):
            return self.restore_text(node)
        return node


def _is_plain_string(value: str) -> bool:
    try:
        return isinstance(yaml.safe_load(value), str)
    except yaml.YAMLError:
        return False


def _finalizer(literals: _Literals) -> Callable[[Any], str]:
    def finalize(value: Any) -> str:
        if isinstance(value, Undefined):
            # StrictUndefined raises on conversion
            return str(value)
        if value is None:
            raise TemplateError("refusing to substitute an empty value (None)")
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str):
            if not _SAFE_SCALAR.match(value):
                raise TemplateError(f"value {value!r} is not safe to substitute into a document")
            if not _is_plain_string(value):
                return literals.hold(value)
            return value
        raise TemplateError(f"cannot substitute a {type(value).__name__} value; iterate over it instead")

    return finalize


class Renderer:
    """Renders TextTemplates against a ClusterContext. Stateless and reentrant."""

    @staticmethod
    def _environment(literals: _Literals) -> jinja2.Environment:
        return jinja2.Environment(
            undefined=StrictUndefined,
            finalize=_finalizer(literals),
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template: TextTemplate, context) -> str:
        """Render a template with the context's variables and validate the document."""
        variables = context.template_vars() if hasattr(context, "template_vars") else dict(context)
        literals = _Literals()
        try:
            compiled = self._environment(literals).from_string(template.source)
            document = compiled.render(**variables)
        except TemplateError as e:
            raise TemplateError(str(e), template.name) from e
        except jinja2.TemplateSyntaxError as e:
            raise TemplateError(f"syntax error on line {e.lineno}: {e.message}", template.name) from e
        except jinja2.UndefinedError as e:
            raise TemplateError(f"undefined variable: {e.message}", template.name) from e
        except jinja2.TemplateError as e:
            raise TemplateError(str(e), template.name) from e

        if literals:
            document = self._restore(document, template, literals)
        self._validate(document, template)
        return document

    def render_policy(self, template: TextTemplate, context) -> str:
        """Render an IAM policy written as YAML and return it as JSON."""
        document = self.render(template, context)
        policy = yaml.safe_load(document)
        validate_policy(policy, template.name)
        return json.dumps(policy)

    @staticmethod
    def _validate(document: str, template: TextTemplate) -> None:
        try:
            if template.format == "yaml":
                list(yaml.safe_load_all(document))
            elif template.format == "json":
                json.loads(document)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise TemplateError(f"rendered {template.format} document is malformed: {e}", template.name) from e

    def _restore(self, document: str, template: TextTemplate, literals: _Literals) -> str:
        if template.format == "text":
            return literals.restore_text(document)
        self._validate(document, template)
        if template.format == "json":
            return json.dumps(literals.restore(json.loads(document)))
        # Re-emitted so that PyYAML quotes each restored value as a string
        documents = [literals.restore(doc) for doc in yaml.safe_load_all(document) if doc is not None]
        return yaml.safe_dump_all(documents, default_flow_style=False, sort_keys=False)


def validate_policy(policy: Any, name: str = "<policy>") -> None:
    """Check the top-level shape of an IAM policy document."""
    if not isinstance(policy, dict):
        raise TemplateError("policy document must be a mapping", name)
    if "Version" not in policy:
        raise TemplateError("policy document is missing 'Version'", name)
    statements = policy.get("Statement")
    if not isinstance(statements, list) or not statements:
        raise TemplateError("policy document must have a non-empty 'Statement' list", name)
    for i, statement in enumerate(statements):
        if not isinstance(statement, dict) or "Effect" not in statement:
            raise TemplateError(f"statement {i} is missing 'Effect'", name)
