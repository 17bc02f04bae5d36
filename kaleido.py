#!/usr/bin/env python3
import io, sys
import ctypes
from ctypes import CFUNCTYPE, c_double
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, TextIO, Tuple, Union

from ply.lex import lex
from llvmlite import ir, binding

# ============================================================
# Diagnostics
# ============================================================

# error categories
LEX = "lex"
PARSE = "parse"
SEMANTIC = "semantic"

@dataclass(frozen=True)
class Loc:
    source: str
    line: int
    col: int
    text: str = ""

    def __str__(self) -> str:
        return f"{self.source}:{self.line}:{self.col}"

@dataclass
class Diag:
    kind: str  # "error"
    category: str  # LEX | PARSE | SEMANTIC
    msg: str
    loc: Optional[Loc] = None
    hint: Optional[str] = None

    def format(self, use_color: bool = True) -> str:
        if use_color:
            RESET, BOLD, RED, BLUE, CYAN = "\033[0m", "\033[1m", "\033[31m", "\033[34m", "\033[36m"
            kind_color = f"{BOLD}{RED}" if self.kind == "error" else f"{BOLD}{BLUE}"
            arrow_color = RED if self.kind == "error" else BLUE
        else:
            RESET = BOLD = RED = BLUE = CYAN = kind_color = arrow_color = ""

        header = f"{kind_color}{self.kind}[{self.category}]{RESET}{BOLD}: {self.msg}{RESET}"
        if self.loc is None:
            result = header
            if self.hint:
                result += f"\n{BOLD}{CYAN}help:{RESET} {self.hint}"
            return result

        line, col = self.loc.line, self.loc.col
        location = f"{BOLD}{BLUE}-->{RESET} {self.loc}"

        line_num_width = len(str(line))
        line_prefix = f"{BOLD}{BLUE}{line:>{line_num_width}} |{RESET} "
        empty_prefix = f"{BOLD}{BLUE}{' ' * line_num_width} |{RESET}"
        caret = " " * (col - 1) + f"{BOLD}{arrow_color}^~~~{RESET}"

        result = f"{header}\n{location}"
        if self.loc.text:
            result += f"\n{empty_prefix}\n{line_prefix}{self.loc.text}\n{empty_prefix} {caret}"
        if self.hint:
            result += f"\n{empty_prefix}\n{empty_prefix} {BOLD}{CYAN}help:{RESET} {self.hint}"
        return result

class ErrorSink:
    """Single diagnostic channel shared by the lexer, parser and code generator.

    Every diagnostic is kept in ``errors`` and, when a stream is
    attached, printed right away so an interactive session sees it before the
    next prompt.
    """

    def __init__(self, stream: Optional[TextIO] = None, use_color: Optional[bool] = None) -> None:
        self.errors: List[Diag] = []
        self.stream = stream
        if use_color is None:
            use_color = stream is not None and hasattr(stream, "isatty") and stream.isatty()
        self.use_color = use_color

    def error(self, category: str, msg: str, loc: Optional[Loc] = None, hint: Optional[str] = None):
        self._emit(Diag("error", category, msg, loc, hint))

    def _emit(self, d: Diag):
        self.errors.append(d)
        if self.stream is not None:
            print(d.format(self.use_color), file=self.stream)
            self.stream.flush()

    def ok(self) -> bool:
        return not self.errors

    def count(self, category: str) -> int:
        return sum(1 for e in self.errors if e.category == category)

# ============================================================
# Lexer
# ============================================================

reserved = {
    "def": "DEF",
    "extern": "EXTERN",
}

tokens = (
    "DEF", "EXTERN",
    "IDENTIFIER", "NUMBER", "BADNUMBER",
    "CHAR",
)

t_ignore = " \t\r\f\v"

# Rules are tried in definition order; CHAR must stay last.
def t_comment(t):
    r'\#[^\n\r]*'
    pass

def t_newline(t):
    r'\n+'
    t.lexer.lineno += len(t.value)

def t_IDENTIFIER(t):
    r'[A-Za-z][A-Za-z0-9]*'
    t.type = reserved.get(t.value, "IDENTIFIER")
    return t

def t_NUMBER(t):
    r'[0-9.]+'
    try:
        t.value = float(t.value)
    except ValueError:
        # reported by Lexer.next_token, where the source location is known
        t.type = "BADNUMBER"
    return t

def t_CHAR(t):
    r'.'
    return t

def t_error(t):
    # unreachable while t_CHAR matches any character
    t.lexer.skip(1)

_master = None

def _master_lexer():
    global _master
    if _master is None:
        _master = lex()
    return _master

@dataclass(frozen=True)
class Token:
    kind: str  # EOF | DEF | EXTERN | IDENTIFIER | NUMBER | BADNUMBER | CHAR
    value: Union[str, float, None] = None
    loc: Optional[Loc] = field(default=None, compare=False, repr=False)

    def is_char(self, c: str) -> bool:
        return self.kind == "CHAR" and self.value == c

    def describe(self) -> str:
        if self.kind == "EOF":
            return "end of input"
        if self.kind == "NUMBER":
            return f"number {self.value:g}"
        return f"'{self.value}'"

class Lexer:
    """Pull-model tokenizer over a character stream.

    Lines are read from ``stream`` only when the ply lexer has run dry, so the
    lexer never reads past the line holding the current token. Once the stream
    is exhausted every call yields an EOF token.
    """

    def __init__(self, stream: TextIO, sink: ErrorSink, name: str = "<stdin>") -> None:
        self.stream = stream
        self.sink = sink
        self.name = name
        self.lineno = 0
        self.line = ""
        self.at_eof = False
        self._lex = _master_lexer().clone()
        self._lex.input("")

    def _loc(self, lexpos: int) -> Loc:
        return Loc(self.name, self.lineno, lexpos + 1, self.line.rstrip("\n"))

    def _read_line(self):
        line = self.stream.readline()
        if not line:
            self.at_eof = True
            return
        self.lineno += 1
        self.line = line
        self._lex.input(line)

    def next_token(self) -> Token:
        while not self.at_eof:
            t = self._lex.token()
            if t is None:
                self._read_line()
                continue
            loc = self._loc(t.lexpos)
            if t.type == "BADNUMBER":
                self.sink.error(LEX, f"malformed number literal '{t.value}'", loc,
                                hint="a number is digits with at most one '.', e.g. 1.5 or .5")
            return Token(t.type, t.value, loc)
        return Token("EOF", None, self._loc(len(self.line.rstrip("\n"))))

    def __iter__(self):
        while True:
            tok = self.next_token()
            yield tok
            if tok.kind == "EOF":
                return

def tokenize(text: str, sink: Optional[ErrorSink] = None) -> List[Token]:
    return list(Lexer(io.StringIO(text), sink or ErrorSink(), name="<string>"))

# ============================================================
# AST
# ============================================================

@dataclass(frozen=True)
class NumberExpr:
    value: float
    loc: Optional[Loc] = field(default=None, compare=False, repr=False)

@dataclass(frozen=True)
class VariableExpr:
    name: str
    loc: Optional[Loc] = field(default=None, compare=False, repr=False)

@dataclass(frozen=True)
class BinaryExpr:
    op: str
    lhs: "Expr"
    rhs: "Expr"
    loc: Optional[Loc] = field(default=None, compare=False, repr=False)

@dataclass(frozen=True)
class CallExpr:
    callee: str
    args: Tuple["Expr", ...] = ()
    loc: Optional[Loc] = field(default=None, compare=False, repr=False)

@dataclass(frozen=True)
class Prototype:
    name: str
    params: Tuple[str, ...] = ()
    loc: Optional[Loc] = field(default=None, compare=False, repr=False)

    @property
    def arity(self) -> int:
        return len(self.params)

    @property
    def is_anonymous(self) -> bool:
        return self.name == ANON_NAME

@dataclass(frozen=True)
class Function:
    proto: Prototype
    body: "Expr"
    loc: Optional[Loc] = field(default=None, compare=False, repr=False)

Expr = Union[NumberExpr, VariableExpr, BinaryExpr, CallExpr]
Node = Union[NumberExpr, VariableExpr, BinaryExpr, CallExpr, Prototype, Function]

# top-level expressions are wrapped in a nullary function with this name;
# '_' is not an identifier character, so user code can never refer to it
ANON_NAME = "__anon_expr"

# ============================================================
# Parser
# ============================================================

# higher binds tighter
DEFAULT_PRECEDENCE: Dict[str, int] = {
    "<": 10,
    "+": 20,
    "-": 20,
    "*": 40,
}

class Parser:
    def __init__(self, lexer: Lexer, sink: ErrorSink, precedence: Optional[Dict[str, int]] = None):
        self.lexer = lexer
        self.es = sink
        self.precedence = dict(DEFAULT_PRECEDENCE if precedence is None else precedence)
        self.cur = Token("EOF")

    def advance(self) -> Token:
        self.cur = self.lexer.next_token()
        return self.cur

    def set_precedence(self, op: str, prec: int):
        if not isinstance(op, str) or len(op) != 1:
            raise ValueError(f"binary operator must be a single character, got {op!r}")
        if prec <= 0:
            raise ValueError(f"precedence for {op!r} must be positive, got {prec}")
        self.precedence[op] = prec

    def tok_precedence(self) -> int:
        if self.cur.kind != "CHAR":
            return -1
        prec = self.precedence.get(self.cur.value, -1)
        return prec if prec > 0 else -1

    def _error(self, msg: str, hint: Optional[str] = None):
        self.es.error(PARSE, msg, self.cur.loc, hint)
        return None

    # numberexpr ::= number
    def parse_number_expr(self) -> NumberExpr:
        node = NumberExpr(self.cur.value, loc=self.cur.loc)
        self.advance()
        return node

    # parenexpr ::= '(' expression ')'
    def parse_paren_expr(self) -> Optional[Expr]:
        self.advance()
        inner = self.parse_expression()
        if inner is None:
            return None
        if not self.cur.is_char(")"):
            return self._error("expected ')'", hint=f"found {self.cur.describe()}")
        self.advance()
        return inner

    # identifierexpr ::= identifier | identifier '(' (expression (',' expression)*)? ')'
    def parse_identifier_expr(self) -> Optional[Expr]:
        name, loc = self.cur.value, self.cur.loc
        self.advance()
        if not self.cur.is_char("("):
            return VariableExpr(name, loc=loc)

        self.advance()
        args: List[Expr] = []
        if not self.cur.is_char(")"):
            while True:
                arg = self.parse_expression()
                if arg is None:
                    return None
                args.append(arg)
                if self.cur.is_char(")"):
                    break
                if not self.cur.is_char(","):
                    return self._error("expected ')' or ',' in argument list",
                                       hint=f"found {self.cur.describe()}")
                self.advance()
        self.advance()
        return CallExpr(name, tuple(args), loc=loc)

    def parse_primary(self) -> Optional[Expr]:
        k = self.cur.kind
        if k == "IDENTIFIER":
            return self.parse_identifier_expr()
        if k == "NUMBER":
            return self.parse_number_expr()
        if k == "BADNUMBER":
            return None  # the lexer has already reported it
        if self.cur.is_char("("):
            return self.parse_paren_expr()
        return self._error("unknown token when expecting an expression",
                           hint=f"found {self.cur.describe()}")

    # binoprhs ::= (binop primary)*
    def parse_bin_op_rhs(self, expr_prec: int, lhs: Expr) -> Optional[Expr]:
        while True:
            tok_prec = self.tok_precedence()
            if tok_prec < expr_prec:
                return lhs

            op = self.cur
            self.advance()
            rhs = self.parse_primary()
            if rhs is None:
                return None

            # a tighter operator after rhs takes rhs as its lhs
            if tok_prec < self.tok_precedence():
                rhs = self.parse_bin_op_rhs(tok_prec + 1, rhs)
                if rhs is None:
                    return None

            lhs = BinaryExpr(op.value, lhs, rhs, loc=op.loc)

    # expression ::= primary binoprhs
    def parse_expression(self) -> Optional[Expr]:
        lhs = self.parse_primary()
        if lhs is None:
            return None
        return self.parse_bin_op_rhs(0, lhs)

    # prototype ::= identifier '(' identifier* ')'
    def parse_prototype(self) -> Optional[Prototype]:
        if self.cur.kind != "IDENTIFIER":
            return self._error("expected function name in prototype")
        name, loc = self.cur.value, self.cur.loc
        self.advance()

        if not self.cur.is_char("("):
            return self._error("expected '(' in prototype")

        params: List[str] = []
        while self.advance().kind == "IDENTIFIER":
            if self.cur.value in params:
                return self._error(f"duplicate parameter name '{self.cur.value}' in prototype",
                                   hint="parameter names must be unique")
            params.append(self.cur.value)

        if not self.cur.is_char(")"):
            return self._error("expected ')' in prototype",
                               hint="parameters are separated by spaces, not commas")
        self.advance()
        return Prototype(name, tuple(params), loc=loc)

    # definition ::= 'def' prototype expression
    def parse_definition(self) -> Optional[Function]:
        loc = self.cur.loc
        self.advance()
        proto = self.parse_prototype()
        if proto is None:
            return None
        body = self.parse_expression()
        if body is None:
            return None
        return Function(proto, body, loc=loc)

    # external ::= 'extern' prototype
    def parse_extern(self) -> Optional[Prototype]:
        self.advance()
        return self.parse_prototype()

    # toplevelexpr ::= expression
    def parse_top_level_expr(self) -> Optional[Function]:
        loc = self.cur.loc
        body = self.parse_expression()
        if body is None:
            return None
        return Function(Prototype(ANON_NAME, (), loc=loc), body, loc=loc)

def _string_parser(text: str, sink: ErrorSink) -> Parser:
    p = Parser(Lexer(io.StringIO(text), sink, name="<string>"), sink)
    p.advance()
    return p

def parse_expr(text: str, sink: Optional[ErrorSink] = None) -> Optional[Expr]:
    return _string_parser(text, sink or ErrorSink()).parse_expression()

def parse_toplevel(text: str, sink: Optional[ErrorSink] = None) -> Optional[Union[Function, Prototype]]:
    """Parse one definition, extern or bare expression from ``text``."""
    p = _string_parser(text, sink or ErrorSink())
    if p.cur.kind == "DEF":
        return p.parse_definition()
    if p.cur.kind == "EXTERN":
        return p.parse_extern()
    return p.parse_top_level_expr()

# ============================================================
# Scope & prototype registry
# ============================================================

class Scope:
    """Parameter bindings of the function body being lowered."""

    def __init__(self) -> None:
        self.values: Dict[str, ir.Value] = {}

    def reset(self, bindings: Iterable[Tuple[str, ir.Value]] = ()):
        self.values = dict(bindings)

    def bind(self, name: str, value: ir.Value):
        self.values[name] = value

    def lookup(self, name: str) -> Optional[ir.Value]:
        return self.values.get(name)

class PrototypeRegistry:
    """Last-seen prototype per function name, kept for the whole session.

    Units are compiled one at a time, so a function defined or declared in an
    earlier unit is absent from the current one; its prototype here is what
    lets the code generator declare it again on demand.
    """

    def __init__(self) -> None:
        self.protos: Dict[str, Prototype] = {}

    def register(self, proto: Prototype):
        self.protos[proto.name] = proto

    def get(self, name: str) -> Optional[Prototype]:
        return self.protos.get(name)

    def names(self) -> List[str]:
        return sorted(self.protos)

    def __contains__(self, name: str) -> bool:
        return name in self.protos

    def __len__(self) -> int:
        return len(self.protos)

# ============================================================
# Backend
# ============================================================

class Backend:
    """What the code generator needs from an IR builder.

    Values and functions are opaque handles. ``lookup_function`` only sees the
    current unit; finding functions from earlier units is the code generator's
    job (see PrototypeRegistry).
    """

    def new_unit(self):
        raise NotImplementedError

    def constant(self, value: float):
        raise NotImplementedError

    def binary_op(self, kind: str, lhs, rhs):
        raise NotImplementedError

    def bool_to_number(self, value):
        raise NotImplementedError

    def call(self, fn, args: List):
        raise NotImplementedError

    def lookup_function(self, name: str):
        raise NotImplementedError

    def declare_function(self, name: str, params: Tuple[str, ...]):
        raise NotImplementedError

    def arity(self, fn) -> int:
        raise NotImplementedError

    def params(self, fn) -> List:
        raise NotImplementedError

    def has_body(self, fn) -> bool:
        raise NotImplementedError

    def open_body(self, fn):
        raise NotImplementedError

    def set_return(self, value):
        raise NotImplementedError

    def finalize(self, fn):
        raise NotImplementedError

    def erase(self, fn):
        raise NotImplementedError

DOUBLE = ir.DoubleType()

class LLVMBackend(Backend):
    def __init__(self, module_name: str = "kaleido") -> None:
        self.module_name = module_name
        self.units = 0
        self.builder: Optional[ir.IRBuilder] = None
        self.module = self.new_unit()

    def new_unit(self) -> ir.Module:
        self.units += 1
        self.module = ir.Module(name=f"{self.module_name}.{self.units}")
        self.builder = None
        return self.module

    # ----- values
    def constant(self, value: float) -> ir.Constant:
        return ir.Constant(DOUBLE, value)

    def binary_op(self, kind: str, lhs: ir.Value, rhs: ir.Value) -> ir.Value:
        b = self.builder
        if kind == "fadd":
            return b.fadd(lhs, rhs, name="addtmp")
        if kind == "fsub":
            return b.fsub(lhs, rhs, name="subtmp")
        if kind == "fmul":
            return b.fmul(lhs, rhs, name="multmp")
        if kind == "fcmp_ult":
            return b.fcmp_unordered("<", lhs, rhs, name="cmptmp")
        raise ValueError(f"unsupported binary op kind {kind!r}")

    def bool_to_number(self, value: ir.Value) -> ir.Value:
        return self.builder.uitofp(value, DOUBLE, name="booltmp")

    def call(self, fn: ir.Function, args: List[ir.Value]) -> ir.Value:
        return self.builder.call(fn, args, name="calltmp")

    # ----- functions
    def lookup_function(self, name: str) -> Optional[ir.Function]:
        gv = self.module.globals.get(name)
        return gv if isinstance(gv, ir.Function) else None

    def declare_function(self, name: str, params: Tuple[str, ...]) -> ir.Function:
        fn = self.lookup_function(name)
        if fn is not None:
            return fn
        fnty = ir.FunctionType(DOUBLE, [DOUBLE] * len(params))
        fn = ir.Function(self.module, fnty, name=name)
        for arg, pname in zip(fn.args, params):
            arg.name = pname
        return fn

    def arity(self, fn: ir.Function) -> int:
        return len(fn.args)

    def params(self, fn: ir.Function) -> List[ir.Argument]:
        return list(fn.args)

    def has_body(self, fn: ir.Function) -> bool:
        return not fn.is_declaration

    def open_body(self, fn: ir.Function):
        self.builder = ir.IRBuilder(fn.append_basic_block("entry"))

    def set_return(self, value: ir.Value):
        self.builder.ret(value)

    def finalize(self, fn: ir.Function) -> ir.Function:
        self.builder = None
        return fn

    def erase(self, fn: ir.Function):
        # ir.Module cannot drop a global, so the unit is rebuilt without it
        self.builder = None
        old = self.module
        self.module = ir.Module(name=old.name)
        for gv in old.globals.values():
            if gv is fn:
                continue
            gv.parent = self.module
            self.module.scope.register(gv.name)
            self.module.add_global(gv)

# ============================================================
# Code generation
# ============================================================

BINOP_KINDS = {
    "+": "fadd",
    "-": "fsub",
    "*": "fmul",
    "<": "fcmp_ult",
}

class CodeGen:
    def __init__(self, backend: Backend, registry: PrototypeRegistry, sink: ErrorSink):
        self.backend = backend
        self.registry = registry
        self.es = sink
        self.scope = Scope()

    def _error(self, msg: str, loc: Optional[Loc], hint: Optional[str] = None):
        self.es.error(SEMANTIC, msg, loc, hint)
        return None

    def get_function(self, name: str):
        fn = self.backend.lookup_function(name)
        if fn is not None:
            return fn
        # defined or declared by an earlier unit: declare it again here
        proto = self.registry.get(name)
        if proto is not None:
            return self.emit(proto)
        return None

    def emit(self, node: Node):
        if isinstance(node, NumberExpr):
            return self.backend.constant(node.value)

        if isinstance(node, VariableExpr):
            v = self.scope.lookup(node.name)
            if v is None:
                return self._error(f"unknown variable name '{node.name}'", node.loc)
            return v

        if isinstance(node, BinaryExpr):
            lhs = self.emit(node.lhs)
            if lhs is None:
                return None
            rhs = self.emit(node.rhs)
            if rhs is None:
                return None
            kind = BINOP_KINDS.get(node.op)
            if kind is None:
                return self._error(f"invalid binary operator '{node.op}'", node.loc,
                                   hint="supported operators are " + " ".join(BINOP_KINDS))
            v = self.backend.binary_op(kind, lhs, rhs)
            if kind == "fcmp_ult":
                v = self.backend.bool_to_number(v)
            return v

        if isinstance(node, CallExpr):
            return self._emit_call(node)

        if isinstance(node, Prototype):
            return self.backend.declare_function(node.name, node.params)

        if isinstance(node, Function):
            return self.emit_function(node)

        raise TypeError(f"cannot lower {type(node).__name__}")

    def _emit_call(self, node: CallExpr):
        fn = self.get_function(node.callee)
        if fn is None:
            return self._error(f"unknown function referenced '{node.callee}'", node.loc,
                               hint=f"declare it with 'extern {node.callee}(...)' or define it with 'def'")
        expected = self.backend.arity(fn)
        if expected != len(node.args):
            return self._error("incorrect number of arguments passed", node.loc,
                               hint=f"'{node.callee}' takes {expected}, got {len(node.args)}")
        args = []
        for a in node.args:
            v = self.emit(a)
            if v is None:
                return None
            args.append(v)
        return self.backend.call(fn, args)

    def emit_extern(self, proto: Prototype):
        fn = self.emit(proto)
        self.registry.register(proto)
        return fn

    def emit_function(self, func: Function):
        proto = func.proto
        # registered before the body is lowered and kept even if lowering fails
        self.registry.register(proto)
        fn = self.get_function(proto.name)
        if fn is None:
            return None
        if self.backend.has_body(fn):
            return self._error(f"redefinition of function '{proto.name}'", proto.loc)
        if self.backend.arity(fn) != proto.arity:
            return self._error(f"prototype of '{proto.name}' does not match its earlier declaration",
                               proto.loc, hint=f"it was declared with {self.backend.arity(fn)} parameter(s)")

        self.backend.open_body(fn)
        self.scope.reset()
        for pname, arg in zip(proto.params, self.backend.params(fn)):
            self.scope.bind(pname, arg)
        ret = self.emit(func.body)
        if ret is None:
            self.backend.erase(fn)
            return None
        self.backend.set_return(ret)
        return self.backend.finalize(fn)

# ============================================================
# JIT
# ============================================================

# host functions callable from the language through 'extern'

@CFUNCTYPE(c_double, c_double)
def _putchard(x):
    sys.stderr.write(chr(int(x) % 256))
    sys.stderr.flush()
    return 0.0

@CFUNCTYPE(c_double, c_double)
def _printd(x):
    sys.stderr.write(f"{x:f}\n")
    sys.stderr.flush()
    return 0.0

BUILTINS = {
    "putchard": _putchard,
    "printd": _printd,
}

class UnresolvedFunction(RuntimeError):
    def __init__(self, name: str):
        super().__init__(f"unresolved function '{name}'")
        self.name = name

class JIT:
    def __init__(self, opt_level: int = 2):
        binding.initialize_native_target()
        binding.initialize_native_asmprinter()
        for name, cb in BUILTINS.items():
            binding.add_symbol(name, ctypes.cast(cb, ctypes.c_void_p).value)

        self.opt_level = opt_level
        target = binding.Target.from_default_triple()
        self.tm = target.create_target_machine()
        backing = binding.parse_assembly("")
        self.engine = binding.create_mcjit_compiler(backing, self.tm)
        self.pto = binding.create_pipeline_tuning_options(speed_level=opt_level)
        self.pb = binding.create_pass_builder(self.tm, self.pto)
        # functions with a body in the engine
        self.defined: Set[str] = set()

    def check_links(self, mod: binding.ModuleRef):
        """Raise UnresolvedFunction for a declaration nothing can satisfy.

        MCJIT aborts the process on an unresolved symbol, so every declaration
        must name a function already in the engine or a host symbol.
        """
        for fn in mod.functions:
            if not fn.is_declaration or fn.name.startswith("llvm."):
                continue
            if fn.name in self.defined or binding.address_of_symbol(fn.name):
                continue
            raise UnresolvedFunction(fn.name)

    def compile(self, module: ir.Module) -> binding.ModuleRef:
        module.triple = self.tm.triple
        module.data_layout = str(self.tm.target_data)
        mod = binding.parse_assembly(str(module))
        mod.verify()
        if self.opt_level > 0:
            self.pb.getModulePassManager().run(mod, self.pb)
        return mod

    def add_module(self, module: ir.Module) -> binding.ModuleRef:
        mod = self.compile(module)
        self.check_links(mod)
        self.engine.add_module(mod)
        self.engine.finalize_object()
        self.defined.update(fn.name for fn in mod.functions if not fn.is_declaration)
        return mod

    def run(self, module: ir.Module, name: str) -> float:
        """Compile ``module``, call its nullary function ``name`` and drop the module."""
        mod = self.add_module(module)
        try:
            addr = self.engine.get_function_address(name)
            return CFUNCTYPE(c_double)(addr)()
        finally:
            self.engine.remove_module(mod)
            self.defined.discard(name)

# ============================================================
# Driver
# ============================================================

@dataclass
class Options:
    opt_level: int = 2
    jit: bool = True
    dump_ir: bool = False
    interactive: bool = False
    use_color: Optional[bool] = None
    prompt: str = "ready> "

@dataclass
class Outcome:
    kind: str  # "def" | "extern" | "expr"
    name: str
    ir: str
    value: Optional[float] = None

class Session:
    def __init__(self, stream: TextIO, options: Optional[Options] = None,
                 out: Optional[TextIO] = None, name: str = "<stdin>"):
        self.opts = options or Options()
        self.out = out if out is not None else sys.stderr
        self.es = ErrorSink(self.out, self.opts.use_color)
        self.lexer = Lexer(stream, self.es, name=name)
        self.parser = Parser(self.lexer, self.es)
        self.registry = PrototypeRegistry()
        self.backend = LLVMBackend()
        self.codegen = CodeGen(self.backend, self.registry, self.es)
        self.jit = JIT(self.opts.opt_level) if self.opts.jit else None
        self.outcomes: List[Outcome] = []

    def _prompt(self):
        if self.opts.interactive:
            self.out.write(self.opts.prompt)
            self.out.flush()

    def _report(self, header: str, text: str):
        print(header, file=self.out)
        print(text, file=self.out)

    def _ir_text(self, fn) -> str:
        return str(self.backend.module) if self.opts.dump_ir else str(fn)

    def _jit_failed(self, err: RuntimeError, func: Function):
        hint = None
        if isinstance(err, UnresolvedFunction):
            hint = f"'{err.name}' is declared but has no body and is not a host function"
        self.es.error(SEMANTIC, str(err).strip(), func.proto.loc, hint)

    def run(self) -> int:
        self._prompt()
        self.parser.advance()
        while True:
            tok = self.parser.cur
            if tok.kind == "EOF":
                break
            if tok.is_char(";"):
                self._prompt()
                self.parser.advance()
            elif tok.kind == "DEF":
                self.handle_definition()
            elif tok.kind == "EXTERN":
                self.handle_extern()
            else:
                self.handle_top_level_expression()
        if self.opts.interactive:
            self.out.write("\n")
        return 0 if self.es.ok() else 1

    def handle_definition(self):
        func = self.parser.parse_definition()
        if func is None:
            # skip a token for error recovery
            self.parser.advance()
            return
        fn = self.codegen.emit_function(func)
        if fn is None:
            return
        name = func.proto.name
        try:
            if self.jit is not None:
                mod = self.jit.add_module(self.backend.module)
                text = str(mod) if self.opts.dump_ir else str(mod.get_function(name))
            else:
                text = self._ir_text(fn)
        except RuntimeError as e:
            self._jit_failed(e, func)
            return
        finally:
            self.backend.new_unit()
        self._report("Read function definition:", text)
        self.outcomes.append(Outcome("def", name, text))

    def handle_extern(self):
        proto = self.parser.parse_extern()
        if proto is None:
            self.parser.advance()
            return
        fn = self.codegen.emit_extern(proto)
        text = str(fn)
        self._report("Read extern:", text)
        self.outcomes.append(Outcome("extern", proto.name, text))

    def handle_top_level_expression(self):
        func = self.parser.parse_top_level_expr()
        if func is None:
            self.parser.advance()
            return
        fn = self.codegen.emit_function(func)
        if fn is None:
            return
        text = self._ir_text(fn)
        value = None
        try:
            if self.jit is not None:
                value = self.jit.run(self.backend.module, ANON_NAME)
        except RuntimeError as e:
            self._jit_failed(e, func)
            return
        finally:
            self.backend.new_unit()
        if self.jit is not None:
            print(f"Evaluated to {value:f}", file=self.out)
        else:
            self._report("Read top-level expression:", text)
        self.outcomes.append(Outcome("expr", ANON_NAME, text, value))

def run_source(text: str, options: Optional[Options] = None, out: Optional[TextIO] = None) -> Session:
    """Run a whole program held in a string; returns the finished session."""
    s = Session(io.StringIO(text), options, out if out is not None else io.StringIO(), name="<string>")
    s.run()
    return s

# ============================================================
# CLI
# ============================================================

USAGE = """usage: kaleido [-O0|-O1|-O2|-O3] [--no-jit] [--dump-ir] [FILE|-]

Reads definitions ('def'), declarations ('extern') and expressions separated
by ';' from FILE, or standard input when FILE is '-' or omitted.

  -O<n>       optimization level for the JIT (default 2)
  --no-jit    only lower to LLVM IR and print it
  --dump-ir   print the whole module of each unit instead of the function
"""

def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    opts = Options()
    path: Optional[str] = None

    for arg in args:
        if arg in ("-h", "--help"):
            print(USAGE)
            return 0
        if arg == "--no-jit":
            opts.jit = False
        elif arg == "--dump-ir":
            opts.dump_ir = True
        elif arg.startswith("-O") and arg[2:] in ("0", "1", "2", "3"):
            opts.opt_level = int(arg[2:])
        elif arg.startswith("-") and arg != "-":
            print(f"error: unknown option '{arg}'")
            print(USAGE)
            return 2
        elif path is not None:
            print("error: only one input file is accepted")
            return 2
        else:
            path = arg

    if path is None or path == "-":
        opts.interactive = sys.stdin.isatty()
        return Session(sys.stdin, opts, name="<stdin>").run()

    try:
        f = open(path, "r", encoding="utf-8")
    except OSError as e:
        print(f"error: cannot read {path}: {e.strerror}")
        return 2
    with f:
        return Session(f, opts, name=path).run()


if __name__ == "__main__":
    sys.exit(main())
