import argparse
import concurrent.futures
import functools
import graphlib
import io
import json
import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from sly import Lexer, Parser

log = logging.getLogger(__name__)

DEFAULT_ADDR = "https://raw.githubusercontent.com/cockroachdb/cockroach/master/sql/parser/sql.y"

type Pattern = str | re.Pattern


class GrammarError(Exception):
    pass


class GrammarSyntaxError(GrammarError):
    def __init__(self, message: str, lineno: Optional[int] = None):
        if lineno is not None:
            message = f"line {lineno}: {message}"
        super().__init__(message)
        self.lineno = lineno


class DuplicateDefinitionError(GrammarError):
    def __init__(self, name: str, lineno: Optional[int] = None):
        where = f" (line {lineno})" if lineno else ""
        super().__init__(f"production {name!r} defined more than once{where}")
        self.name = name
        self.lineno = lineno


class UndefinedProductionError(GrammarError):
    def __init__(self, name: str, referrer: Optional[str] = None):
        if referrer is None:
            message = f"undefined production {name!r}"
        else:
            message = f"undefined production {name!r} referenced from {referrer!r}"
        super().__init__(message)
        self.name = name
        self.referrer = referrer


class CyclicInlineError(GrammarError):
    def __init__(self, cycle: Iterable[str]):
        self.cycle = list(cycle)
        super().__init__("cannot inline recursive productions: " + " -> ".join(self.cycle))


class AmbiguousDescendError(GrammarError):
    def __init__(self, name: str, count: int):
        super().__init__(f"cannot descend past {name!r}: {count} alternatives remain after filtering")
        self.name = name
        self.count = count


class NoMatchError(GrammarError):
    def __init__(self, name: str, include: Optional[Pattern], exclude: Optional[Pattern]):
        super().__init__(f"no alternative of {name!r} survives include={_pattern_text(include)!r}"
                         f" exclude={_pattern_text(exclude)!r}")
        self.name = name


class GenerationError(GrammarError):
    def __init__(self, failed: List[str]):
        super().__init__("diagram generation failed for: " + ", ".join(failed))
        self.failed = failed


def _pattern_text(p: Optional[Pattern]) -> Optional[str]:
    if isinstance(p, re.Pattern):
        return p.pattern
    return p


@dataclass(frozen=True)
class Literal:
    text: str  # without the surrounding quotes, escapes kept as written

    def render(self) -> str:
        return f"'{self.text}'"


@dataclass(frozen=True)
class Reference:
    name: str

    def render(self) -> str:
        return self.name


@dataclass(frozen=True)
class Group:
    alternatives: Tuple["Alternative", ...]
    modifier: str = ""

    def render(self) -> str:
        return render_symbols((self,))


type Symbol = Literal | Reference | Group


@dataclass
class Alternative:
    symbols: Tuple[Symbol, ...] = ()
    _text: Optional[str] = field(default=None, init=False, repr=False, compare=False)

    def __setattr__(self, name, value):
        # Any change to the symbol sequence invalidates the rendered form.
        if name == "symbols":
            object.__setattr__(self, "_text", None)
        object.__setattr__(self, name, value)

    @property
    def text(self) -> str:
        if self._text is None:
            self._text = render_symbols(self.symbols)
        return self._text

    def references(self) -> Iterator[str]:
        return symbol_references(self.symbols)


# Group nesting is unbounded; the walks below keep an explicit stack.

def render_symbols(symbols: Tuple[Symbol, ...]) -> str:
    out = []
    stack = [symbols]  # rendered pieces (str) or symbol sequences still to expand
    while stack:
        item = stack.pop()
        if isinstance(item, str):
            out.append(item)
            continue
        work = []
        for k, sym in enumerate(item):
            if k:
                work.append(' ')
            match sym:
                case Group(alts, modifier):
                    work.append('(')
                    for m, alt in enumerate(alts):
                        if m:
                            work.append(' | ')
                        work.append(alt._text if alt._text is not None else alt.symbols)
                    work.append(')' + modifier)
                case _:
                    work.append(sym.render())
        stack.extend(reversed(work))
    return ''.join(out)


def symbol_references(symbols: Iterable[Symbol]) -> Iterator[str]:
    stack = [iter(symbols)]
    while stack:
        sym = next(stack[-1], None)
        if sym is None:
            stack.pop()
            continue
        match sym:
            case Reference(name):
                yield name
            case Group(alternatives=alts):
                stack.append(s for alt in alts for s in alt.symbols)


@dataclass
class Production:
    name: str
    alternatives: List[Alternative]
    lineno: Optional[int] = field(default=None, compare=False)

    def render(self) -> str:
        return f"{self.name}: " + ' | '.join(alt.text for alt in self.alternatives) + " ;"

    def references(self) -> Iterator[str]:
        for alt in self.alternatives:
            yield from alt.references()


def filter_production(production: Production,
                      include: Optional[Pattern] = None,
                      exclude: Optional[Pattern] = None) -> Production:
    """Returns a copy of production keeping only the alternatives whose
    rendered text matches include (if given) and does not match exclude
    (if given). Matching is re.search over Alternative.text."""

    inc = re.compile(include) if isinstance(include, str) else include
    exc = re.compile(exclude) if isinstance(exclude, str) else exclude

    def keep(alt: Alternative) -> bool:
        if inc is not None and not inc.search(alt.text):
            return False
        if exc is not None and exc.search(alt.text):
            return False
        return True

    kept = [alt for alt in production.alternatives if keep(alt)]
    if not kept:
        raise NoMatchError(production.name, include, exclude)
    return Production(production.name, kept, production.lineno)


@dataclass
class _SubstFrame:
    alts: Tuple[Alternative, ...]
    modifier: str = ""
    ai: int = 0
    si: int = 0
    symbols: Optional[List[Symbol]] = None
    out: List[Alternative] = field(default_factory=list)


def substitute(alts: Iterable[Alternative], name: str, body: List[Alternative]) -> List[Alternative]:
    """Replaces every reference to name in alts by body. A multi-alternative
    body is wrapped in a Group, except where the reference is the whole
    alternative, in which case it is replaced by all of body's alternatives.
    Nested groups are rebuilt bottom-up from an explicit stack of frames."""

    whole = (Reference(name),)
    stack = [_SubstFrame(tuple(alts))]
    while True:
        f = stack[-1]
        if f.symbols is None:
            if f.ai == len(f.alts):
                stack.pop()
                if not stack:
                    return f.out
                stack[-1].symbols.append(Group(tuple(f.out), f.modifier))
                continue
            if len(body) > 1 and f.alts[f.ai].symbols == whole:
                f.out.extend(Alternative(b.symbols) for b in body)
                f.ai += 1
                continue
            f.symbols = []
            f.si = 0
        current = f.alts[f.ai].symbols
        if f.si == len(current):
            f.out.append(Alternative(tuple(f.symbols)))
            f.symbols = None
            f.ai += 1
            continue
        sym = current[f.si]
        f.si += 1
        match sym:
            case Reference(n) if n == name:
                if len(body) == 1:
                    f.symbols.extend(body[0].symbols)
                else:
                    f.symbols.append(Group(tuple(Alternative(b.symbols) for b in body)))
            case Group(group_alts, modifier):
                stack.append(_SubstFrame(group_alts, modifier))
            case _:
                f.symbols.append(sym)


@dataclass
class Grammar:
    productions: Dict[str, Production] = field(default_factory=dict)

    def __contains__(self, name: str) -> bool:
        return name in self.productions

    def __iter__(self) -> Iterator[Production]:
        return iter(self.productions.values())

    def add(self, production: Production):
        if production.name in self.productions:
            raise DuplicateDefinitionError(production.name, production.lineno)
        self.productions[production.name] = production

    def production(self, name: str) -> Production:
        try:
            return self.productions[name]
        except KeyError:
            raise UndefinedProductionError(name) from None

    def dangling(self) -> Iterator[Tuple[Production, str]]:
        """Yields (production, name) for each reference with no definition."""
        for p in self:
            for ref in p.references():
                if ref not in self.productions:
                    yield p, ref

    def render(self) -> str:
        return ''.join(p.render() + "\n" for p in self)

    def inline(self, names: Iterable[str]):
        """Substitutes the bodies of the named productions into every
        referrer and removes their definitions. Names are processed in
        dependency order; nothing is modified if validation fails."""

        names = sorted(set(names))
        for name in names:
            self.production(name)

        inline_set = set(names)
        deps = {}
        for name in names:
            refs = set(self.productions[name].references())
            if name in refs:
                raise CyclicInlineError([name, name])
            deps[name] = refs & inline_set
        try:
            order = list(graphlib.TopologicalSorter(deps).static_order())
        except graphlib.CycleError as e:
            raise CyclicInlineError(e.args[1]) from None

        for name in order:
            body = self.productions.pop(name).alternatives
            for p in self:
                p.alternatives = substitute(p.alternatives, name, body)

    def extract_grammar(self, target: str, descend: bool = False,
                        include: Optional[Pattern] = None,
                        exclude: Optional[Pattern] = None) -> "Grammar":
        """Returns a new Grammar with the (filtered) target first, followed by
        everything reachable from it in breadth-first order. With descend the
        target must be left with a single alternative; if that alternative is
        a bare reference, the referenced production becomes the root and the
        wrapper is dropped, otherwise the target narrowed to that alternative
        is the root."""

        root = filter_production(self.production(target), include, exclude)
        overrides = {target: root}
        seed = target
        if descend:
            if len(root.alternatives) > 1:
                raise AmbiguousDescendError(target, len(root.alternatives))
            match root.alternatives[0].symbols:
                case (Reference(name),):
                    seed = name
                    overrides = {}

        out = Grammar()
        seen = {seed}
        queue = [(seed, target)]
        for name, referrer in queue:
            if name in overrides:
                p = overrides[name]
            elif name in self.productions:
                p = self.productions[name]
            else:
                raise UndefinedProductionError(name, referrer)
            out.add(Production(p.name, [Alternative(alt.symbols) for alt in p.alternatives], p.lineno))
            for ref in p.references():
                if ref not in seen:
                    seen.add(ref)
                    queue.append((ref, name))
        return out

    def extract(self, target: str, descend: bool = False,
                include: Optional[Pattern] = None,
                exclude: Optional[Pattern] = None) -> str:
        return self.extract_grammar(target, descend, include, exclude).render()


def untuple(xs, idx=0):
    return [x[idx] for x in xs]


class EbnfLexer(Lexer):
    tokens = { IDENT, LITERAL, SUFFIX, VBAR }  # pyright: ignore
    ignore = ' \t\r'
    ignore_comment = r'(\#|//)[^\n]*'
    literals = { ':', ';', '(', ')' }

    _ = _  # pyright: ignore

    IDENT = r'[a-zA-Z_][a-zA-Z0-9_]*'
    LITERAL = r"'(\\.|[^'\\\n])*'"
    SUFFIX = r'[?*+]'
    VBAR = r'[|]'

    @_(r'\n+')
    def ignore_newline(self, t):
        self.lineno += len(t.value)

    def error(self, t):
        if t.value[0] == "'":
            raise GrammarSyntaxError("unterminated literal", self.lineno)
        raise GrammarSyntaxError(f"illegal character {t.value[0]!r}", self.lineno)


class EbnfParser(Parser):
    tokens = EbnfLexer.tokens

    _ = _  # pyright: ignore

    @_('rule { rule }')
    def grammar(self, p):
        return [p.rule0] + untuple(p[1])

    @_("IDENT ':' altList ';'")
    def rule(self, p):
        return Production(p.IDENT, p.altList, lineno=p.lineno)

    @_("alt { VBAR alt }")
    def altList(self, p):
        return [p.alt0] + untuple(p[1], idx=1)

    @_('{ symbol }')
    def alt(self, p):
        return Alternative(tuple(untuple(p[0])))

    @_('IDENT')
    def symbol(self, p):
        return Reference(p.IDENT)

    @_('LITERAL')
    def symbol(self, p):
        return Literal(p.LITERAL[1:-1])

    @_("'(' altList ')'")
    def symbol(self, p):
        return Group(tuple(p.altList))

    @_("'(' altList ')' SUFFIX")
    def symbol(self, p):
        return Group(tuple(p.altList), p.SUFFIX)

    def error(self, t):
        if t is None:
            raise GrammarSyntaxError("unexpected end of input: unterminated group or missing ';'")
        raise GrammarSyntaxError(f"unexpected {t.value!r}", getattr(t, 'lineno', None))


def decode_source(b: bytes) -> str:
    try:
        return b.decode('utf-8')
    except UnicodeDecodeError as e:
        raise GrammarSyntaxError(f"input is not valid UTF-8 at byte {e.start}") from e


def parse_grammar(text: str | bytes) -> Grammar:
    if isinstance(text, bytes):
        text = decode_source(text)
    productions = EbnfParser().parse(EbnfLexer().tokenize(text))
    g = Grammar()
    for p in productions:
        g.add(p)
    for p, ref in g.dangling():
        raise GrammarSyntaxError(f"{p.name!r} refers to undefined production {ref!r}", p.lineno)
    return g


# Bison sources: only the rules section is of interest, with all
# semantic actions removed before tokenizing.

def strip_actions(text: str) -> str:
    """Removes { ... } blocks, keeping their newlines so that line numbers
    stay meaningful. Quotes and comments are skipped over when counting
    braces."""

    out = []
    depth = 0
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if text.startswith('/*', i):
            end = text.find('*/', i + 2)
            if end < 0:
                raise GrammarSyntaxError("unterminated comment", text.count('\n', 0, i) + 1)
            j = end + 2
        elif text.startswith('//', i):
            j = text.find('\n', i)
            if j < 0:
                j = n
        elif c in '"\'`':
            j = i + 1
            while j < n and text[j] != c:
                if text[j] == '\\' and c != '`':
                    j += 1
                j += 1
            if j >= n:
                raise GrammarSyntaxError("unterminated quote", text.count('\n', 0, i) + 1)
            j += 1
        else:
            j = i + 1
        chunk = text[i:j]
        if c == '{' and j == i + 1:
            depth += 1
        if depth == 0:
            out.append(chunk)
        else:
            out.append('\n' * chunk.count('\n'))
        if c == '}' and j == i + 1:
            if depth == 0:
                raise GrammarSyntaxError("unbalanced '}'", text.count('\n', 0, i) + 1)
            depth -= 1
        i = j
    if depth:
        raise GrammarSyntaxError("unterminated action block")
    return ''.join(out)


class YaccLexer(Lexer):
    tokens = { RULE_NAME, IDENT, CHAR, PIPE }  # pyright: ignore
    ignore = ' \t\r'
    ignore_line_comment = r'//[^\n]*'
    ignore_directive = r"%prec\s+('[^'\n]*'|[a-zA-Z_][a-zA-Z0-9_]*)|%empty"
    literals = { ';' }

    _ = _  # pyright: ignore

    CHAR = r"'(\\.|[^'\\\n])+'"

    @_(r'[a-zA-Z_][a-zA-Z0-9_]*\s*:')
    def RULE_NAME(self, t):
        self.lineno += t.value.count('\n')
        t.value = t.value[:-1].strip()
        return t

    IDENT = r'[a-zA-Z_][a-zA-Z0-9_]*'
    PIPE = r'[|]'

    @_(r'/\*(.|\n)*?\*/')
    def ignore_comment(self, t):
        self.lineno += t.value.count('\n')

    @_(r'\n+')
    def ignore_newline(self, t):
        self.lineno += len(t.value)

    def error(self, t):
        raise GrammarSyntaxError(f"illegal character {t.value[0]!r}", self.lineno)


class YaccParser(Parser):
    tokens = YaccLexer.tokens

    _ = _  # pyright: ignore

    @_('rule { rule }')
    def rules(self, p):
        return [p.rule0] + untuple(p[1])

    @_("RULE_NAME body")
    def rule(self, p):
        return (p.RULE_NAME, p.body, p.lineno)

    @_("RULE_NAME body ';'")
    def rule(self, p):
        return (p.RULE_NAME, p.body, p.lineno)

    @_("items { PIPE items }")
    def body(self, p):
        return [p.items0] + untuple(p[1], idx=1)

    @_('{ item }')
    def items(self, p):
        return untuple(p[0])

    @_('IDENT')
    def item(self, p):
        return Reference(p.IDENT)

    @_('CHAR')
    def item(self, p):
        return Literal(p.CHAR[1:-1])

    def error(self, t):
        if t is None:
            raise GrammarSyntaxError("unexpected end of rules section")
        raise GrammarSyntaxError(f"unexpected {t.value!r}", getattr(t, 'lineno', None))


def yacc_to_ebnf(text: str) -> str:
    """Converts the rules section of a bison grammar to EBNF text accepted
    by parse_grammar. Tokens (identifiers that are not rules) become quoted
    literals; alternatives using the reserved error token are dropped."""

    sections = re.split(r'^%%[ \t]*$', text, flags=re.M)
    if len(sections) < 2:
        raise GrammarSyntaxError("no '%%' rules section found")
    offset = sections[0].count('\n') + 1
    rules = YaccParser().parse(YaccLexer().tokenize(strip_actions(sections[1]), lineno=offset))

    merged: Dict[str, List[List[Symbol]]] = {}
    linenos = {}
    for name, alts, lineno in rules:
        merged.setdefault(name, []).extend(alts)
        linenos.setdefault(name, lineno)

    kept = {}
    for name, alts in merged.items():
        alts = [alt for alt in alts if Reference('error') not in alt]
        if alts:
            kept[name] = alts
        else:
            log.warning("rule %s has only error alternatives, skipping", name)

    def convert(sym: Symbol) -> Symbol:
        match sym:
            case Reference(name) if name not in kept:
                return Literal(name)
            case _:
                return sym

    g = Grammar()
    for name, alts in kept.items():
        g.add(Production(name, [Alternative(tuple(convert(s) for s in alt)) for alt in alts], linenos[name]))
    return g.render()


def fetch(location: str) -> bytes:
    if re.match(r'^https?://', location):
        import requests

        resp = requests.get(location, timeout=30)
        resp.raise_for_status()
        return resp.content
    return Path(location).read_bytes()


def generate_bnf(location: str) -> bytes:
    log.info("generate BNF: %s", location)
    return yacc_to_ebnf(decode_source(fetch(location))).encode('utf-8')


def diagram_for_production(p: Production, href_prefix: str = ""):
    import railroad

    def symbol_item(s: Symbol):
        match s:
            case Literal(text):
                return railroad.Terminal(text)
            case Reference(name):
                return railroad.NonTerminal(name, href=f"{href_prefix}#{name}")
            case Group(alts, modifier):
                item = alts_item(alts)
                match modifier:
                    case "?":
                        return railroad.Optional(item, skip=False)
                    case "*":
                        return railroad.ZeroOrMore(item, repeat=None, skip=False)
                    case "+":
                        return railroad.OneOrMore(item, repeat=None)
                    case _:
                        return item

    def alt_item(a: Alternative):
        if not a.symbols:
            return railroad.Skip()
        return railroad.Sequence(*[symbol_item(s) for s in a.symbols])

    def alts_item(alts):
        if len(alts) == 1:
            return alt_item(alts[0])
        return railroad.Choice(0, *[alt_item(a) for a in alts])

    return railroad.Diagram(alts_item(p.alternatives))


def render_railroad(ebnf: str | bytes, href_prefix: str = "") -> bytes:
    log.info("generate railroad diagrams")
    out = io.StringIO()
    for p in parse_grammar(ebnf):
        out.write(f'<div id="{p.name}" class="production">\n<p>{p.name}</p>\n')
        diagram_for_production(p, href_prefix).writeSvg(out.write)
        out.write('\n</div>\n')
    return out.getvalue().encode('utf-8')


@dataclass
class StmtSpec:
    name: str
    stmt: Optional[str] = None  # if unspecified, uses name
    inline: List[str] = field(default_factory=list)
    include: Optional[Pattern] = None
    exclude: Optional[Pattern] = None
    replace: Dict[str, str] = field(default_factory=dict)

    @property
    def source(self) -> str:
        return self.stmt or self.name

    @property
    def stem(self) -> str:
        return self.name.replace("_stmt", "", 1)


@dataclass
class Config:
    addr: str = DEFAULT_ADDR
    base_dir: Path = Path("..", "_includes", "sql", "diagrams")
    root: str = "stmt_block"
    grammar_page: str = "sql-grammar.html"
    specs_path: Optional[Path] = None


DEFAULT_SPECS = [
    StmtSpec("alter_table_stmt", inline=["alter_table_cmds", "alter_table_cmd", "column_def", "opt_drop_behavior", "alter_column_default", "opt_column", "opt_set_data"]),
    StmtSpec("begin_transaction", stmt="transaction_stmt", inline=["opt_transaction", "opt_transaction_mode_list", "transaction_iso_level", "transaction_user_priority"], include="'BEGIN'"),
    StmtSpec("commit_transaction", stmt="transaction_stmt", inline=["opt_transaction"], include="'COMMIT'"),
    StmtSpec("create_database_stmt"),
    StmtSpec("create_index_stmt", inline=["opt_unique", "opt_name", "index_params"]),
    StmtSpec("create_table_stmt", inline=["opt_table_elem_list", "table_elem_list", "table_elem"]),
    StmtSpec("delete_stmt", inline=["relation_expr_opt_alias", "where_clause", "returning_clause", "target_list", "target_elem"]),
    StmtSpec("drop_database", stmt="drop_stmt", include="'DROP' 'DATABASE'"),
    StmtSpec("drop_index", stmt="drop_stmt", include="'DROP' 'INDEX'", inline=["opt_drop_behavior"]),
    StmtSpec("drop_stmt", inline=["any_name_list", "any_name", "qualified_name_list", "qualified_name"]),
    StmtSpec("drop_table", stmt="drop_stmt", include="'DROP' 'TABLE'"),
    StmtSpec("explain_stmt", inline=["explainable_stmt", "explain_option_list"]),
    StmtSpec("grant_stmt", inline=["privileges", "privilege_list", "privilege", "privilege_target", "grantee_list"]),
    StmtSpec("insert_stmt", inline=["insert_target", "insert_rest", "returning_clause"]),
    StmtSpec("release_savepoint", stmt="release_stmt", inline=["savepoint_name"]),
    StmtSpec("rename_column", stmt="rename_stmt", include="'ALTER' 'TABLE' .* 'RENAME' opt_column"),
    StmtSpec("rename_database", stmt="rename_stmt", include="'ALTER' 'DATABASE'"),
    StmtSpec("rename_index", stmt="rename_stmt", include="'ALTER' 'INDEX'"),
    StmtSpec("rename_table", stmt="rename_stmt", include="'ALTER' 'TABLE' .* 'RENAME' 'TO'"),
    StmtSpec("revoke_stmt", inline=["privileges", "privilege_list", "privilege", "privilege_target", "grantee_list"]),
    StmtSpec("rollback_transaction", stmt="transaction_stmt", inline=["opt_transaction"], include="'ROLLBACK'"),
    StmtSpec("savepoint_stmt", inline=["savepoint_name"]),
    StmtSpec("select_stmt", inline=["select_no_parens", "simple_select", "opt_sort_clause", "select_limit"]),
    StmtSpec("set_stmt", inline=["set_rest", "set_rest_more", "generic_set"], exclude="CHARACTERISTICS", replace={"'TRANSACTION' transaction_mode_list | ": ""}),
    StmtSpec("set_transaction", stmt="set_stmt", inline=["set_rest", "transaction_mode_list", "transaction_iso_level", "transaction_user_priority"], replace={" | set_rest_more": ""}, include="'TRANSACTION'"),
    StmtSpec("show_columns", stmt="show_stmt", include="'SHOW' 'COLUMNS'"),
    StmtSpec("show_databases", stmt="show_stmt", include="'SHOW' 'DATABASES'"),
    StmtSpec("show_grants", stmt="show_stmt", inline=["on_privilege_target_clause", "privilege_target", "for_grantee_clause", "grantee_list"], include="'SHOW' 'GRANTS'"),
    StmtSpec("show_index", stmt="show_stmt", include="'SHOW' 'INDEX'"),
    StmtSpec("show_keys", stmt="show_stmt", include="'SHOW' 'KEYS'"),
    StmtSpec("show_tables", stmt="show_stmt", inline=["opt_from_var_name_clause"], include="'SHOW' 'TABLES'"),
    StmtSpec("show_timezone", stmt="show_stmt", include="'SHOW' 'TIME' 'ZONE'"),
    StmtSpec("show_transaction", stmt="show_stmt", include="'SHOW' 'TRANSACTION'"),
    StmtSpec("truncate_stmt", inline=["opt_table", "relation_expr_list", "relation_expr"]),
    StmtSpec("update_stmt", inline=["relation_expr_opt_alias", "set_clause_list", "set_clause", "single_set_clause", "multiple_set_clause", "ctext_row", "ctext_expr_list", "ctext_expr", "from_clause", "from_list", "where_clause", "returning_clause"]),
    StmtSpec("values", stmt="values_clause", inline=["ctext_row", "ctext_expr_list", "ctext_expr"]),
]


def load_specs(path: Path) -> List[StmtSpec]:
    with open(path) as f:
        records = json.load(f)
    if not isinstance(records, list):
        raise ValueError(f"{path}: expected a list of statement records")
    specs = []
    for n, r in enumerate(records):
        if not isinstance(r, dict) or not r.get("name"):
            raise ValueError(f"{path}: record {n} has no name")
        unknown = set(r) - {"name", "stmt", "inline", "include", "exclude", "replace"}
        if unknown:
            raise ValueError(f"{path}: record {r['name']!r} has unknown fields {sorted(unknown)}")
        specs.append(StmtSpec(**r))
    return specs


def reduce_grammar(bnf: str | bytes, inline: Iterable[str], stmt: str, descend: bool,
                   include: Optional[Pattern] = None,
                   exclude: Optional[Pattern] = None) -> str:
    inline = list(inline)
    log.info("parse: %s, inline: %s, descend: %s", stmt, inline, descend)
    g = parse_grammar(bnf)
    g.inline(inline)
    return g.extract(stmt, descend, include, exclude)


def run_spec(bnf: bytes, spec: StmtSpec) -> bytes:
    text = reduce_grammar(bnf, spec.inline, spec.source, False, spec.include, spec.exclude)
    for old, new in spec.replace.items():
        text = text.replace(old, new)
    return text.encode('utf-8')


type Renderer = Callable[[bytes, str], bytes]


def generate(bnf: bytes, specs: List[StmtSpec], config: Config,
             render: Renderer = render_railroad) -> Dict[str, bytes]:
    """Runs the whole-grammar job and one job per statement concurrently.
    Returns rendered markup keyed by output stem. Every job is allowed to
    finish; if any failed, GenerationError is raised from the first one."""

    def grammar_job():
        g = reduce_grammar(bnf, [], config.root, True)
        return render(g.encode('utf-8'), "")

    def spec_job(spec: StmtSpec):
        return render(run_spec(bnf, spec), config.grammar_page)

    jobs = [("grammar", grammar_job)]
    jobs += [(spec.stem, functools.partial(spec_job, spec)) for spec in specs]

    with concurrent.futures.ThreadPoolExecutor(max_workers=len(jobs)) as pool:
        futures = [(name, pool.submit(job)) for name, job in jobs]
        concurrent.futures.wait([f for _, f in futures])

    outputs = {}
    failed = []
    for name, f in futures:
        exc = f.exception()
        if exc is not None:
            log.error("%s: %s: %s", name, type(exc).__name__, exc)
            failed.append((name, exc))
        else:
            outputs[name] = f.result()
    if failed:
        raise GenerationError([name for name, _ in failed]) from failed[0][1]
    return outputs


def write_outputs(outputs: Dict[str, bytes], base_dir: Path):
    base_dir.mkdir(parents=True, exist_ok=True)
    for stem, body in outputs.items():
        path = base_dir / f"{stem}.html"
        path.write_bytes(body)
        log.info("wrote %s", path)


def generate_all(config: Config):
    specs = load_specs(config.specs_path) if config.specs_path else DEFAULT_SPECS
    bnf = generate_bnf(config.addr)
    write_outputs(generate(bnf, specs, config), config.base_dir)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Generate SVG diagrams from SQL grammar. "
                                     "With no command, generates SQL diagrams for all statements.")
    parser.add_argument("--in", dest="input", help="Input path; stdin if empty", default="")
    parser.add_argument("--out", dest="output", help="Output path; stdout if empty", default="")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress")
    parser.add_argument("--addr", help="Location of sql.y file. Can also specify a local file.", default=DEFAULT_ADDR)
    parser.add_argument("--base", help="Base directory for html output", default=str(Config.base_dir))
    parser.add_argument("--specs", help="JSON file of statement records; built-in list if empty", default="")
    parser.add_argument("--root", help="Top-level statement of the full grammar diagram", default=Config.root)
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("bnf", help="Write EBNF from sql.y")

    reduce = sub.add_parser("reduce", help="Reduce and simplify an EBNF file to a smaller grammar")
    reduce.add_argument("--stmt", help="Name of top-level statement", default="stmt_block")
    reduce.add_argument("--descend", action=argparse.BooleanOptionalAction, default=True, help="Descend past --stmt")
    reduce.add_argument("--inline", help="Comma-separated list of statements to inline", default="")
    reduce.add_argument("--include", help="Keep only alternatives matching this regex", default=None)
    reduce.add_argument("--exclude", help="Drop alternatives matching this regex", default=None)

    sub.add_parser("rr", help="Generate railroad diagrams from EBNF")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format="%(asctime)s %(levelname)s %(message)s")

    def read() -> bytes:
        if args.input:
            return Path(args.input).read_bytes()
        return sys.stdin.buffer.read()

    def write(b: bytes):
        if args.output:
            Path(args.output).write_bytes(b)
        else:
            sys.stdout.buffer.write(b)

    config = Config(addr=args.addr, base_dir=Path(args.base), root=args.root,
                    specs_path=Path(args.specs) if args.specs else None)

    try:
        match args.command:
            case "bnf":
                write(generate_bnf(config.addr))
            case "reduce":
                inline = [n for n in args.inline.split(",") if n]
                write(reduce_grammar(read(), inline, args.stmt, args.descend,
                                     args.include, args.exclude).encode('utf-8'))
            case "rr":
                write(render_railroad(read()))
            case _:
                generate_all(config)
    except (GrammarError, ValueError, OSError) as e:
        # OSError covers missing files and requests.RequestException
        log.error("%s: %s", type(e).__name__, e)
        sys.exit(1)


if __name__ == '__main__':
    main()
