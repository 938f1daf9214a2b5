# src/teliclens/vfg/extractor.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set, Tuple, Union

from loguru import logger

from ..core.config import feature_enabled
from .discovery import Language
from .identity import variable_id
from .model import (
    GLOBAL_SCOPE,
    DataType,
    ExtractionResult,
    FlowEdge,
    FlowKind,
    VariableKind,
    VariableSymbol,
)
from .parser_registry import (
    ParseFailure,
    SyntaxNode,
    SyntaxTree,
    TraversalEventKind,
    walk,
)

# ==============================================================================
# Config
# ==============================================================================


def _default_field_symbols() -> bool:
    return feature_enabled("extract.field_symbols", True)


@dataclass(frozen=True)
class ExtractorConfig:
    emit_field_symbols: bool = field(default_factory=_default_field_symbols)
    # `const h = hash(p)` yields p -> h with the callee named in the reason
    call_argument_flows: bool = True


# ==============================================================================
# Language adapters
# ==============================================================================


class Construct(str, Enum):
    FUNCTION = "function"
    DECLARATOR = "declarator"
    IDENTIFIER = "identifier"
    RETURN = "return"
    ASSIGNMENT = "assignment"
    OTHER = "other"


class _Adapter:
    """
    Classifies raw node types into the closed Construct set and knows where each
    construct keeps its names, parameters and values in the language's tree.
    """

    def __init__(self, lang: Language) -> None:
        self.lang = lang
        self._init_sets()

    def _init_sets(self) -> None:
        if self.lang == Language.PY:
            self.function_nodes = {"FunctionDef", "Lambda"}
            self.signature_nodes: Set[str] = set()
            self.class_nodes = {"ClassDef"}
            self.annotation_nodes = {"Annotation"}
            self.declarator_nodes = {"Assign", "AnnAssign"}
            self.identifier_nodes = {"Name"}
            self.return_nodes = {"Return"}
            self.assignment_nodes = {"NamedExpr"}
            self.call_nodes = {"Call"}
            self.await_nodes = {"Await"}
            self.self_names = {"self"}
            self.non_identifiers = {"True", "False", "None"}
            self.non_use_fields = {"attr", "keyword"}
            self.constructor_types = {
                "list": DataType.ARRAY,
                "tuple": DataType.ARRAY,
                "dict": DataType.OBJECT,
                "set": DataType.OBJECT,
                "str": DataType.STRING,
                "int": DataType.NUMBER,
                "float": DataType.NUMBER,
                "bool": DataType.BOOLEAN,
            }
            self.literal_types = {
                "SimpleString": DataType.STRING,
                "ConcatenatedString": DataType.STRING,
                "FormattedString": DataType.STRING,
                "Integer": DataType.NUMBER,
                "Float": DataType.NUMBER,
                "Imaginary": DataType.NUMBER,
                "List": DataType.ARRAY,
                "Tuple": DataType.ARRAY,
                "Dict": DataType.OBJECT,
                "Set": DataType.OBJECT,
                "Lambda": DataType.FUNCTION,
            }
        else:  # JS/TS
            self.function_nodes = {
                "function_declaration",
                "function_expression",
                "function",
                "arrow_function",
                "method_definition",
                "generator_function_declaration",
                "generator_function",
            }
            self.signature_nodes = {"function_signature", "method_signature", "abstract_method_signature"}
            self.class_nodes = {"class_declaration", "class", "abstract_class_declaration"}
            self.annotation_nodes = {"type_annotation"}
            self.declarator_nodes = {"variable_declarator"}
            self.identifier_nodes = {"identifier", "shorthand_property_identifier"}
            self.return_nodes = {"return_statement"}
            self.assignment_nodes = {"assignment_expression"}
            self.call_nodes = {"call_expression"}
            self.await_nodes = {"await_expression", "parenthesized_expression"}
            self.self_names = {"this"}
            self.non_identifiers = {"undefined"}
            self.non_use_fields: Set[str] = set()
            self.constructor_types = {
                "Array": DataType.ARRAY,
                "Object": DataType.OBJECT,
                "String": DataType.STRING,
                "Number": DataType.NUMBER,
                "Boolean": DataType.BOOLEAN,
            }
            self.literal_types = {
                "string": DataType.STRING,
                "template_string": DataType.STRING,
                "number": DataType.NUMBER,
                "true": DataType.BOOLEAN,
                "false": DataType.BOOLEAN,
                "array": DataType.ARRAY,
                "object": DataType.OBJECT,
                "function_expression": DataType.FUNCTION,
                "function": DataType.FUNCTION,
                "arrow_function": DataType.FUNCTION,
                "generator_function": DataType.FUNCTION,
            }

    # ---- classification -------------------------------------------------------

    def classify(self, n: SyntaxNode) -> Construct:
        t = n.type
        if t in self.function_nodes:
            return Construct.FUNCTION
        if t in self.declarator_nodes:
            # Python: `self.x = v` is an attribute store, not a declaration
            if self.lang == Language.PY and t == "Assign" and self._py_attribute_store(n):
                return Construct.ASSIGNMENT
            return Construct.DECLARATOR
        if t in self.identifier_nodes:
            return Construct.IDENTIFIER
        if t in self.return_nodes:
            return Construct.RETURN
        if t in self.assignment_nodes:
            return Construct.ASSIGNMENT
        return Construct.OTHER

    def is_identifier(self, n: Optional[SyntaxNode]) -> bool:
        return n is not None and n.type in self.identifier_nodes and bool(n.text) and n.text not in self.non_identifiers

    def is_class(self, n: SyntaxNode) -> bool: return n.type in self.class_nodes
    def is_signature(self, n: SyntaxNode) -> bool: return n.type in self.signature_nodes
    def is_annotation(self, n: SyntaxNode) -> bool: return n.type in self.annotation_nodes

    # ---- functions -------------------------------------------------------------

    def function_name(self, n: SyntaxNode) -> str:
        line = n.line_start
        if n.type == "arrow_function":
            return f"arrow_{line}"
        if n.type == "Lambda":
            return f"lambda_{line}"
        name = n.child_by_field("name")
        if name is not None and name.text:
            return name.text
        return f"anonymous_{line}"

    def function_name_node(self, n: SyntaxNode) -> Optional[SyntaxNode]:
        name = n.child_by_field("name")
        return name if self.is_identifier(name) else None

    def parameters(self, n: SyntaxNode) -> List[SyntaxNode]:
        """Identifier nodes bound as parameters of a function-like node."""
        out: List[SyntaxNode] = []
        if self.lang == Language.PY:
            params = n.child_by_field("params")
            if params is None:
                return out
            for p in params.children:
                if p.type == "Param":
                    name = p.child_by_field("name")
                    if self.is_identifier(name):
                        out.append(name)
            return out

        single = n.child_by_field("parameter")
        if single is not None:
            found = self._unwrap_param(single)
            if found is not None:
                out.append(found)
        params = n.child_by_field("parameters")
        if params is not None:
            for p in params.named_children():
                found = self._unwrap_param(p)
                if found is not None:
                    out.append(found)
        return out

    def _unwrap_param(self, p: SyntaxNode) -> Optional[SyntaxNode]:
        # identifier | assignment_pattern(left) | rest_pattern | required/optional_parameter(pattern)
        while p is not None:
            if self.is_identifier(p) and p.type == "identifier":
                return p
            if p.type == "assignment_pattern":
                p = p.child_by_field("left")
            elif p.type in ("required_parameter", "optional_parameter"):
                p = p.child_by_field("pattern")
            elif p.type == "rest_pattern":
                kids = p.named_children()
                p = kids[0] if kids else None
            else:
                return None
        return None

    def class_name_node(self, n: SyntaxNode) -> Optional[SyntaxNode]:
        name = n.child_by_field("name")
        return name if name is not None and name.type in self.identifier_nodes else None

    # ---- declarations / assignments -------------------------------------------

    def declarator_targets(self, n: SyntaxNode) -> List[SyntaxNode]:
        """Identifier nodes a declarator defines (destructuring patterns are skipped in JS)."""
        if self.lang != Language.PY:
            name = n.child_by_field("name")
            return [name] if name is not None and name.type == "identifier" else []

        out: List[SyntaxNode] = []
        if n.type == "AnnAssign":
            target = n.child_by_field("target")
            if self.is_identifier(target):
                out.append(target)
            return out
        for at in n.children_by_field("targets"):
            target = at.child_by_field("target")
            if target is None:
                continue
            if self.is_identifier(target):
                out.append(target)
            elif target.type in ("Tuple", "List"):
                for el in target.children_by_field("elements"):
                    value = el.child_by_field("value")
                    if self.is_identifier(value):
                        out.append(value)
        return out

    def declarator_value(self, n: SyntaxNode) -> Optional[SyntaxNode]:
        return n.child_by_field("value")

    def assignment_parts(self, n: SyntaxNode) -> Tuple[Optional[SyntaxNode], Optional[SyntaxNode]]:
        if self.lang == Language.PY:
            if n.type == "Assign":
                targets = n.children_by_field("targets")
                left = targets[0].child_by_field("target") if len(targets) == 1 else None
                return left, n.child_by_field("value")
            return n.child_by_field("target"), n.child_by_field("value")
        return n.child_by_field("left"), n.child_by_field("right")

    def field_target(self, n: Optional[SyntaxNode]) -> Optional[str]:
        """'this.x' / 'self.x' when n is a member store on the receiver, else None."""
        if n is None:
            return None
        if self.lang == Language.PY:
            if n.type != "Attribute":
                return None
            obj, prop = n.child_by_field("value"), n.child_by_field("attr")
        else:
            if n.type != "member_expression":
                return None
            obj, prop = n.child_by_field("object"), n.child_by_field("property")
        if obj is None or prop is None or not prop.text:
            return None
        receiver = obj.text if obj.text is not None else obj.type
        if receiver not in self.self_names:
            return None
        return f"{receiver}.{prop.text}"

    def _py_attribute_store(self, n: SyntaxNode) -> bool:
        targets = n.children_by_field("targets")
        if len(targets) != 1:
            return False
        target = targets[0].child_by_field("target")
        return target is not None and target.type == "Attribute"

    # ---- returns / calls / literals --------------------------------------------

    def return_value(self, n: SyntaxNode) -> Optional[SyntaxNode]:
        if self.lang == Language.PY:
            return n.child_by_field("value")
        kids = n.named_children()
        return kids[0] if kids else None

    def unwrap(self, n: Optional[SyntaxNode]) -> Optional[SyntaxNode]:
        while n is not None and n.type in self.await_nodes:
            if self.lang == Language.PY:
                n = n.child_by_field("expression")
            else:
                kids = [k for k in n.named_children() if k.type != "comment"]
                n = kids[0] if len(kids) == 1 else None
        return n

    def call_parts(self, n: Optional[SyntaxNode]) -> Optional[Tuple[str, List[SyntaxNode]]]:
        """(callee name, argument nodes) when n is a call, else None."""
        n = self.unwrap(n)
        if n is None or n.type not in self.call_nodes:
            return None
        if self.lang == Language.PY:
            callee = n.child_by_field("func")
            args = [a.child_by_field("value") for a in n.children_by_field("args")]
        else:
            callee = n.child_by_field("function")
            arg_list = n.child_by_field("arguments")
            args = arg_list.named_children() if arg_list is not None else []
        return self.dotted_name(callee), [a for a in args if a is not None]

    def dotted_name(self, n: Optional[SyntaxNode]) -> str:
        if n is None:
            return "<call>"
        if n.text is not None:
            return n.text
        if n.type in ("member_expression", "Attribute"):
            if self.lang == Language.PY:
                obj, prop = n.child_by_field("value"), n.child_by_field("attr")
            else:
                obj, prop = n.child_by_field("object"), n.child_by_field("property")
            return f"{self.dotted_name(obj)}.{prop.text if prop is not None else '?'}"
        return "<call>"

    def infer_type(self, n: Optional[SyntaxNode]) -> DataType:
        if n is None:
            return DataType.UNKNOWN
        if self.lang == Language.PY and n.type == "Name" and n.text in ("True", "False"):
            return DataType.BOOLEAN
        literal = self.literal_types.get(n.type)
        if literal is not None:
            return literal
        if n.type in self.call_nodes:
            callee = n.child_by_field("func" if self.lang == Language.PY else "function")
            if self.is_identifier(callee):
                return self.constructor_types.get(callee.text or "", DataType.UNKNOWN)
        return DataType.UNKNOWN


def infer_data_type(node: Optional[SyntaxNode], lang: Language) -> DataType:
    """Syntactic type guess for an initializer expression."""
    return _Adapter(lang).infer_type(node)


# ==============================================================================
# Traversal context
# ==============================================================================


@dataclass
class _TraversalContext:
    """Per-call traversal state: the scope stack lives here, never at module level."""
    file: str
    adapter: _Adapter
    cfg: ExtractorConfig
    scopes: List[str] = field(default_factory=lambda: [GLOBAL_SCOPE])
    bound: Set[int] = field(default_factory=set)  # id() of identifiers that are binding sites
    result: ExtractionResult = field(default_factory=ExtractionResult)

    @property
    def scope(self) -> str:
        return self.scopes[-1]

    @property
    def parent_function(self) -> Optional[str]:
        return None if self.scope == GLOBAL_SCOPE else self.scope

    def bind(self, n: Optional[SyntaxNode]) -> None:
        if n is not None:
            self.bound.add(id(n))

    def symbol(
        self,
        name: str,
        kind: VariableKind,
        line: int,
        *,
        is_def: bool,
        is_use: bool,
        scope: Optional[str] = None,
        data_type: Optional[DataType] = None,
    ) -> None:
        scope = scope or self.scope
        self.result.variables.append(
            VariableSymbol(
                name=name,
                scope=scope,
                kind=kind,
                file=self.file,
                line=line,
                is_def=is_def,
                is_use=is_use,
                parent_function=None if scope == GLOBAL_SCOPE else scope,
                data_type=data_type,
            )
        )

    def flow(self, src: str, dst: str, kind: FlowKind, reason: str, via: Optional[str] = None) -> None:
        self.result.flows.append(
            FlowEdge(
                source=variable_id(self.file, self.scope, src),
                target=variable_id(self.file, self.scope, dst),
                kind=kind,
                reason=reason,
                via=via,
            )
        )


# ==============================================================================
# Construct handlers
# ==============================================================================


def _enter_function(ctx: _TraversalContext, n: SyntaxNode) -> None:
    ad = ctx.adapter
    ctx.bind(ad.function_name_node(n))
    name = ad.function_name(n)
    ctx.scopes.append(name)
    for p in ad.parameters(n):
        ctx.bind(p)
        ctx.symbol(p.text or "", VariableKind.PARAMETER, p.line_start, is_def=True, is_use=False)


def _value_flows(ctx: _TraversalContext, value: Optional[SyntaxNode], target: str) -> None:
    """Flows into `target` from a bare identifier value or a call's identifier arguments."""
    ad = ctx.adapter
    if ad.is_identifier(value):
        ctx.flow(value.text, target, FlowKind.ASSIGNMENT, f"{value.text} assigned to {target}")
        return
    if not ctx.cfg.call_argument_flows:
        return
    call = ad.call_parts(value)
    if call is None:
        return
    callee, args = call
    for arg in args:
        arg = ad.unwrap(arg)
        if ad.is_identifier(arg):
            ctx.flow(arg.text, target, FlowKind.ASSIGNMENT, f"{arg.text} assigned to {target} via {callee}()", via=callee)


def _enter_declarator(ctx: _TraversalContext, n: SyntaxNode) -> None:
    ad = ctx.adapter
    value = ad.declarator_value(n)
    kind = VariableKind.GLOBAL if ctx.scope == GLOBAL_SCOPE else VariableKind.LOCAL
    for target in ad.declarator_targets(n):
        ctx.bind(target)
        name = target.text or ""
        ctx.symbol(
            name,
            kind,
            target.line_start,
            is_def=True,
            is_use=False,
            data_type=ad.infer_type(ad.unwrap(value)) if value is not None else None,
        )
        _value_flows(ctx, value, name)


def _enter_identifier(ctx: _TraversalContext, n: SyntaxNode) -> None:
    ad = ctx.adapter
    if id(n) in ctx.bound or not ad.is_identifier(n) or n.field in ad.non_use_fields:
        return
    ctx.symbol(n.text or "", VariableKind.LOCAL, n.line_start, is_def=False, is_use=True)


def _enter_return(ctx: _TraversalContext, n: SyntaxNode) -> None:
    ad = ctx.adapter
    value = ad.unwrap(ad.return_value(n))
    if not ad.is_identifier(value):
        return
    ret = f"return_{value.text}"
    ctx.symbol(ret, VariableKind.RETURN, n.line_start, is_def=False, is_use=True)
    ctx.flow(value.text, ret, FlowKind.RETURN, f"{value.text} returned from {ctx.scope}")


def _enter_assignment(ctx: _TraversalContext, n: SyntaxNode) -> None:
    ad = ctx.adapter
    left, right = ad.assignment_parts(n)
    owner_field = ad.field_target(left)
    if owner_field is not None:
        if ctx.cfg.emit_field_symbols:
            ctx.symbol(owner_field, VariableKind.FIELD, left.line_start, is_def=True, is_use=False,
                       data_type=ad.infer_type(ad.unwrap(right)) if right is not None else None)
            _value_flows(ctx, right, owner_field)
        return
    if ad.is_identifier(left) and ad.is_identifier(right):
        ctx.flow(right.text, left.text, FlowKind.ASSIGNMENT, f"{right.text} assigned to {left.text}")


# ==============================================================================
# Public entry points
# ==============================================================================


def extract_variables(
    parsed: Union[SyntaxTree, ParseFailure],
    cfg: Optional[ExtractorConfig] = None,
) -> ExtractionResult:
    """
    Walk one file's tree with an explicit scope stack and collect variable symbols
    and data-flow edges. A ParseFailure yields an empty result and a warning.
    """
    if isinstance(parsed, ParseFailure):
        logger.warning("Failed to parse {}: {}", parsed.file, parsed.describe())
        return ExtractionResult()

    ctx = _TraversalContext(file=parsed.file, adapter=_Adapter(parsed.language), cfg=cfg or ExtractorConfig())
    ad = ctx.adapter

    for ev in walk(parsed):
        node = ev.node
        construct = ad.classify(node)
        if ev.kind is TraversalEventKind.EXIT:
            if construct is Construct.FUNCTION and len(ctx.scopes) > 1:
                ctx.scopes.pop()
            continue

        if construct is Construct.FUNCTION:
            _enter_function(ctx, node)
        elif construct is Construct.DECLARATOR:
            _enter_declarator(ctx, node)
        elif construct is Construct.IDENTIFIER:
            _enter_identifier(ctx, node)
        elif construct is Construct.RETURN:
            _enter_return(ctx, node)
        elif construct is Construct.ASSIGNMENT:
            _enter_assignment(ctx, node)
        elif ad.is_class(node):
            ctx.bind(ad.class_name_node(node))
        elif ad.is_signature(node):
            # Bodiless signatures: parameter names are not references
            ctx.bind(ad.function_name_node(node))
            for p in ad.parameters(node):
                ctx.bind(p)
        elif ad.is_annotation(node):
            # Type annotations name types, not variables
            for sub in walk(node):
                if sub.kind is TraversalEventKind.ENTER and ad.is_identifier(sub.node):
                    ctx.bind(sub.node)

    logger.debug(
        "extracted {} symbols / {} flows from {}",
        len(ctx.result.variables),
        len(ctx.result.flows),
        parsed.file,
    )
    return ctx.result
