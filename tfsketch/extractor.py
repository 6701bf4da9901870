"""Extraction of resource and module declarations from Terraform files.

Files are parsed with python-hcl2. Attribute values are never evaluated:
each one keeps its source text and the syntactic shape of its expression
(template, traversal, tuple, ...) so the extractor can decide what to keep.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Pattern, Sequence, Tuple

import hcl2
from hcl2.rules.base import AttributeRule, BlockRule, BodyRule
from hcl2.rules.containers import ObjectRule, TupleRule
from hcl2.rules.expressions import ExprTermRule
from hcl2.rules.indexing import GetAttrExprTermRule, IndexExprTermRule, SqbIndexRule
from hcl2.rules.literal_rules import FloatLitRule, IdentifierRule, IntLitRule, LiteralValueRule
from hcl2.rules.strings import HeredocTemplateRule, StringRule
from hcl2.utils import SerializationContext, SerializationOptions, process_escape_sequences
from lark.exceptions import UnexpectedInput, VisitError

from .logging import get_logger
from .models import FieldValue, ModuleRef, PathNode, Resource

TF_EXTENSION = ".tf"
DEFAULT_DISPLAY_ATTRIBUTES: Tuple[str, ...] = ("name", "name_prefix", "id")
SELF_REFERENCE_SOURCES = frozenset({"../", ".."})

_SOURCE_OPTIONS = SerializationOptions(with_comments=False)
_VALUE_OPTIONS = SerializationOptions(
    with_comments=False, preserve_heredocs=False, strip_string_quotes=True
)
_TEMPLATE_SEQUENCE = re.compile(r"(?<![$%])[$%]\{")
_ESCAPED_SEQUENCES = ("ESCAPED_INTERPOLATION", "ESCAPED_DIRECTIVE")


class HclSyntaxError(ValueError):
    """Raised when a file cannot be read as HCL."""

    def __init__(
        self, message: str, *, path: str = "<string>", line: int = 0, column: int = 0
    ) -> None:
        super().__init__(f"{path}:{line}: {message}")
        self.path = path
        self.line = line
        self.column = column


class ExprShape(Enum):
    """Syntactic shape of an attribute expression."""

    TEMPLATE = "template"
    TRAVERSAL = "traversal"
    TUPLE = "tuple"
    OBJECT = "object"
    LITERAL = "literal"
    EXPRESSION = "expression"


_DISPLAY_SHAPES = {ExprShape.TEMPLATE, ExprShape.TRAVERSAL}
_FOR_EACH_SHAPES = {ExprShape.TUPLE, ExprShape.OBJECT, ExprShape.TRAVERSAL}


@dataclass
class Attribute:
    """A `name = expression` pair with the expression kept as source text."""

    name: str
    raw: str
    shape: ExprShape
    literal: Optional[str] = None

    def string_value(self) -> Optional[str]:
        """Return the value of a template without interpolation, else None."""
        return self.literal


@dataclass
class Block:
    """A block such as `resource "kind" "name" { ... }`."""

    type: str
    labels: List[str]
    attributes: Dict[str, Attribute] = field(default_factory=dict)
    blocks: List["Block"] = field(default_factory=list)


@dataclass
class HclFile:
    """Top-level content of one parsed file."""

    path: str
    attributes: Dict[str, Attribute] = field(default_factory=dict)
    blocks: List[Block] = field(default_factory=list)

    def blocks_of_type(self, block_type: str) -> Iterator[Block]:
        for block in self.blocks:
            if block.type == block_type:
                yield block


def parse_hcl(text: str, path: str = "<string>") -> HclFile:
    """Parse HCL source text into blocks and attributes."""
    try:
        start = hcl2.parses(text)
    except UnexpectedInput as exc:
        lines = str(exc).strip().splitlines()
        raise HclSyntaxError(
            lines[0] if lines else type(exc).__name__,
            path=path,
            line=_position(exc.line),
            column=_position(exc.column),
        ) from exc
    except VisitError as exc:
        raise HclSyntaxError(str(exc.orig_exc), path=path) from exc
    attributes, blocks = _read_body(start.body)
    return HclFile(path=path, attributes=attributes, blocks=blocks)


def load_hcl(path: Path | str) -> HclFile:
    """Read and parse a file from disk."""
    file_path = Path(path)
    return parse_hcl(file_path.read_text(encoding="utf-8"), str(file_path))


@dataclass(frozen=True)
class ExtractorSettings:
    """Which attributes the extractor reads and which resources it keeps."""

    display_attributes: Tuple[str, ...] = DEFAULT_DISPLAY_ATTRIBUTES
    for_each_attribute: str = "for_each"
    source_attribute: str = "source"
    version_attribute: str = "version"
    type_pattern: Optional[Pattern[str]] = None
    name_pattern: Optional[Pattern[str]] = None

    @classmethod
    def build(
        cls,
        *,
        display_attributes: Sequence[str] | str | None = None,
        type_regexp: str | None = None,
        name_regexp: str | None = None,
    ) -> "ExtractorSettings":
        if isinstance(display_attributes, str):
            display_attributes = display_attributes.split(",")
        attributes = tuple(
            item.strip() for item in (display_attributes or ()) if item and item.strip()
        )
        return cls(
            display_attributes=attributes or DEFAULT_DISPLAY_ATTRIBUTES,
            type_pattern=re.compile(type_regexp) if type_regexp else None,
            name_pattern=re.compile(name_regexp) if name_regexp else None,
        )


@dataclass
class Extraction:
    """Declarations found in one file."""

    resources: List[Resource] = field(default_factory=list)
    module_refs: List[ModuleRef] = field(default_factory=list)


class Extractor:
    """Turns parsed HCL files into Resource and ModuleRef records."""

    def __init__(
        self,
        settings: ExtractorSettings | None = None,
        *,
        loader: Callable[[Path], HclFile] | None = None,
    ) -> None:
        self.settings = settings or ExtractorSettings()
        self._loader = loader or load_hcl
        self.logger = get_logger("extractor")

    def extract_file(self, parsed: HclFile) -> Extraction:
        """Return the resources and module references declared in `parsed`."""
        extraction = Extraction()
        for block in parsed.blocks:
            if block.type == "resource" and len(block.labels) == 2:
                resource = self._resource(block, parsed.path)
                if resource is not None:
                    extraction.resources.append(resource)
            elif block.type == "module" and len(block.labels) == 1:
                module = self._module(block, parsed.path)
                if module is not None:
                    extraction.module_refs.append(module)
        return extraction

    def extract_directory(self, node: PathNode) -> int:
        """Parse the node's own `.tf` files into it; return files read.

        A file that fails to parse is logged and skipped. Failing to list the
        directory itself raises OSError.
        """
        directory = Path(node.full_path)
        files = sorted(
            entry
            for entry in directory.iterdir()
            if entry.is_file() and entry.name.endswith(TF_EXTENSION)
        )

        parsed_count = 0
        for path in files:
            try:
                parsed = self._loader(path)
            except (HclSyntaxError, OSError, UnicodeDecodeError) as exc:
                self.logger.error("Error parsing file %s: %s", path, exc)
                continue
            self._merge(node, self.extract_file(parsed))
            parsed_count += 1
        node.parsed = True
        return parsed_count

    # ------------------------------------------------------------------
    # Internals

    def _merge(self, node: PathNode, extraction: Extraction) -> None:
        for resource in extraction.resources:
            node.resources[resource.key] = resource
            self.logger.info(
                "Found resource %s in file %s (%s)",
                resource.key,
                resource.file_path,
                node.traverse_key,
            )
            if resource.for_each:
                self.logger.info("Found resource %s for_each is %s", resource.key, resource.for_each)
        for module in extraction.module_refs:
            node.module_refs[module.name] = module
            self.logger.info(
                "Found module %s in file %s (%s)",
                module.name,
                module.file_path,
                node.traverse_key,
            )
            if module.for_each:
                self.logger.info("Found module %s for_each is %s", module.name, module.for_each)

    def _resource(self, block: Block, file_path: str) -> Optional[Resource]:
        kind, name = block.labels
        if self.settings.type_pattern and not self.settings.type_pattern.search(kind):
            return None
        if self.settings.name_pattern and not self.settings.name_pattern.search(name):
            return None
        return Resource(
            kind=kind,
            name=name,
            display_field=self._display_field(block),
            for_each=self._for_each(block),
            file_path=file_path,
        )

    def _module(self, block: Block, file_path: str) -> Optional[ModuleRef]:
        name = block.labels[0]
        source = _literal_string(block.attributes.get(self.settings.source_attribute))
        if source in SELF_REFERENCE_SOURCES:
            self.logger.debug("Ignoring module %s with source %r in %s", name, source, file_path)
            return None
        return ModuleRef(
            name=name,
            source=source,
            version=_literal_string(block.attributes.get(self.settings.version_attribute)),
            for_each=self._for_each(block),
            file_path=file_path,
        )

    def _display_field(self, block: Block) -> FieldValue:
        for attribute_name in self.settings.display_attributes:
            attribute = block.attributes.get(attribute_name)
            if attribute is None:
                continue
            if attribute.shape in _DISPLAY_SHAPES:
                return FieldValue.literal(attribute.raw)
            return FieldValue.unsupported()
        return FieldValue.absent()

    def _for_each(self, block: Block) -> str:
        attribute = block.attributes.get(self.settings.for_each_attribute)
        if attribute is None or attribute.shape not in _FOR_EACH_SHAPES:
            return ""
        return attribute.raw


def _literal_string(attribute: Attribute | None) -> str:
    if attribute is None:
        return ""
    value = attribute.string_value()
    return value if value is not None else ""


# ----------------------------------------------------------------------
# Parse tree adapter


def _read_body(body: BodyRule) -> Tuple[Dict[str, Attribute], List[Block]]:
    attributes: Dict[str, Attribute] = {}
    blocks: List[Block] = []
    for child in body.children:
        if isinstance(child, AttributeRule):
            attribute = _read_attribute(child)
            attributes[attribute.name] = attribute
        elif isinstance(child, BlockRule):
            blocks.append(_read_block(child))
    return attributes, blocks


def _read_block(rule: BlockRule) -> Block:
    block_type, *labels = [_label(label) for label in rule.labels]
    attributes, blocks = _read_body(rule.body)
    return Block(type=block_type, labels=labels, attributes=attributes, blocks=blocks)


def _read_attribute(rule: AttributeRule) -> Attribute:
    expression = rule.expression
    inner = _unwrap(expression)
    shape = _classify(inner)
    return Attribute(
        name=str(rule.identifier.serialize()),
        raw=_source_text(expression, inner),
        shape=shape,
        literal=_string_value(inner) if shape is ExprShape.TEMPLATE else None,
    )


def _label(rule: Any) -> str:
    if isinstance(rule, StringRule):
        value = _string_value(rule)
        if value is not None:
            return value
        return _source_text(rule, rule)[1:-1]
    return str(rule.serialize())


def _unwrap(rule: Any) -> Any:
    while isinstance(rule, ExprTermRule) and not rule.parentheses:
        rule = rule.expression
    return rule


def _classify(rule: Any) -> ExprShape:
    if isinstance(rule, (StringRule, HeredocTemplateRule)):
        return ExprShape.TEMPLATE
    if _is_traversal(rule):
        return ExprShape.TRAVERSAL
    if isinstance(rule, TupleRule):
        return ExprShape.TUPLE
    if isinstance(rule, ObjectRule):
        return ExprShape.OBJECT
    if isinstance(rule, (IntLitRule, FloatLitRule, LiteralValueRule)):
        return ExprShape.LITERAL
    return ExprShape.EXPRESSION


def _is_traversal(rule: Any) -> bool:
    """True for `name`, `name.attr`, `name[0]`, `name["key"]` chains."""
    rule = _unwrap(rule)
    if isinstance(rule, IdentifierRule):
        return True
    if isinstance(rule, GetAttrExprTermRule):
        return _is_traversal(rule.expr_term)
    if isinstance(rule, IndexExprTermRule):
        base, index = rule.children[0], rule.children[1]
        if isinstance(index, SqbIndexRule):
            key = _unwrap(index.index_expression)
            if isinstance(key, StringRule):
                if _string_value(key) is None:
                    return False
            elif not isinstance(key, IntLitRule):
                return False
        return _is_traversal(base)
    return False


def _source_text(expression: Any, inner: Any) -> str:
    if isinstance(inner, HeredocTemplateRule):
        return str(inner.heredoc.value).rstrip("\r\n")
    value = expression.serialize(_SOURCE_OPTIONS, SerializationContext(inside_dollar_string=True))
    return str(value)


def _string_value(rule: Any) -> Optional[str]:
    if isinstance(rule, HeredocTemplateRule):
        if _TEMPLATE_SEQUENCE.search(str(rule.heredoc.value)):
            return None
        return str(rule.serialize(_VALUE_OPTIONS, SerializationContext()))
    if not isinstance(rule, StringRule):
        return None
    parts = []
    for part in rule.string_parts:
        content = part.content
        kind = content.lark_name()
        if kind == "STRING_CHARS":
            parts.append(process_escape_sequences(str(content.value)))
        elif kind in _ESCAPED_SEQUENCES:
            parts.append(str(content.value)[1:])
        else:
            return None
    return "".join(parts)


def _position(value: Any) -> int:
    return value if isinstance(value, int) and value > 0 else 0


__all__ = [
    "Attribute",
    "Block",
    "DEFAULT_DISPLAY_ATTRIBUTES",
    "ExprShape",
    "Extraction",
    "Extractor",
    "ExtractorSettings",
    "HclFile",
    "HclSyntaxError",
    "SELF_REFERENCE_SOURCES",
    "TF_EXTENSION",
    "load_hcl",
    "parse_hcl",
]
