import json
import threading

import pytest
import requests

import sqlrr
from sqlrr import (
    Config, GenerationError, NoMatchError, StmtSpec, UndefinedProductionError,
    fetch, generate, generate_all, load_specs, main, render_railroad, run_spec,
)

BASE = b"""
stmt_block: stmt ;
stmt: set_stmt | show_stmt ;
set_stmt: 'SET' 'TRANSACTION' mode | 'SET' var '=' 'VALUE' ;
mode: 'ISOLATION' | 'PRIORITY' ;
var: 'IDENT' ;
show_stmt: 'SHOW' 'TABLES' | 'SHOW' 'DATABASES' ;
"""

SQL_Y = """%token IDENT
%%
stmt_block: stmt_list ;
stmt_list: stmt | stmt_list ';' stmt ;
stmt: drop_stmt { $$ = $1 } | show_stmt ;
drop_stmt: DROP TABLE IDENT | DROP INDEX IDENT ;
show_stmt: SHOW TABLES ;
%%
"""


def echo_render(ebnf, href_prefix):
    return href_prefix.encode() + b"|" + ebnf


def test_stmt_spec_defaults():
    spec = StmtSpec("set_stmt")
    assert spec.source == "set_stmt"
    assert spec.stem == "set"
    assert StmtSpec("drop_table", stmt="drop_stmt").source == "drop_stmt"


def test_run_spec_applies_replacements():
    spec = StmtSpec("set_stmt", inline=["var"], replace={"'SET' 'TRANSACTION' mode | ": ""})
    assert run_spec(BASE, spec) == (
        b"set_stmt: 'SET' 'IDENT' '=' 'VALUE' ;\n"
        b"mode: 'ISOLATION' | 'PRIORITY' ;\n"
    )


def test_generate_outputs():
    specs = [
        StmtSpec("show_tables", stmt="show_stmt", include="'TABLES'"),
        StmtSpec("set_stmt", inline=["var", "mode"]),
    ]
    out = generate(BASE, specs, Config(), render=echo_render)
    assert set(out) == {"grammar", "show_tables", "set"}
    assert out["show_tables"] == b"sql-grammar.html|show_stmt: 'SHOW' 'TABLES' ;\n"
    assert out["set"] == (b"sql-grammar.html|set_stmt: 'SET' 'TRANSACTION' ('ISOLATION' | 'PRIORITY')"
                          b" | 'SET' 'IDENT' '=' 'VALUE' ;\n")
    assert out["grammar"].startswith(b"|stmt: set_stmt | show_stmt ;\n")
    assert b"stmt_block" not in out["grammar"]


def test_jobs_do_not_share_grammar():
    specs = [StmtSpec("set_stmt", inline=["var"]) for _ in range(5)]
    specs.append(StmtSpec("set_var", stmt="set_stmt", include="var"))
    out = generate(BASE, specs, Config(), render=echo_render)
    assert b"var: 'IDENT' ;" in out["set_var"]
    assert b"var" not in out["set"]


def test_generate_waits_for_all_then_fails():
    rendered = []
    lock = threading.Lock()

    def render(ebnf, href_prefix):
        with lock:
            rendered.append(ebnf)
        return ebnf

    specs = [
        StmtSpec("show_tables", stmt="show_stmt", include="'TABLES'"),
        StmtSpec("bad_include", stmt="show_stmt", include="'NOPE'"),
        StmtSpec("missing_stmt"),
        StmtSpec("show_databases", stmt="show_stmt", include="'DATABASES'"),
    ]
    with pytest.raises(GenerationError) as e:
        generate(BASE, specs, Config(), render=render)
    assert e.value.failed == ["bad_include", "missing"]
    assert isinstance(e.value.__cause__, NoMatchError)
    assert len(rendered) == 3


def test_generate_bad_root():
    with pytest.raises(GenerationError) as e:
        generate(BASE, [], Config(root="nope"), render=echo_render)
    assert e.value.failed == ["grammar"]
    assert isinstance(e.value.__cause__, UndefinedProductionError)


def test_render_railroad():
    ebnf = b"set_stmt: 'SET' ('TRANSACTION' mode)? (',' var)* ;\nmode: 'ISOLATION' | ;\nvar: 'IDENT' ('.' 'IDENT')+ ;\n"
    out = render_railroad(ebnf, "sql-grammar.html")
    assert out.count(b"<svg") == 3
    assert b'id="set_stmt"' in out
    assert b"sql-grammar.html#mode" in out
    assert b"ISOLATION" in out


def test_load_specs(tmp_path):
    path = tmp_path / "specs.json"
    path.write_text(json.dumps([
        {"name": "drop_table", "stmt": "drop_stmt", "include": "'TABLE'"},
        {"name": "set_stmt", "inline": ["var"], "replace": {"a": "b"}},
    ]))
    specs = load_specs(path)
    assert specs[0] == StmtSpec("drop_table", stmt="drop_stmt", include="'TABLE'")
    assert specs[1].inline == ["var"]
    assert specs[1].replace == {"a": "b"}


@pytest.mark.parametrize("records", [
    {"name": "x"},
    [{"stmt": "x"}],
    [{"name": "x", "match": "y"}],
])
def test_load_specs_invalid(tmp_path, records):
    path = tmp_path / "specs.json"
    path.write_text(json.dumps(records))
    with pytest.raises(ValueError):
        load_specs(path)


def test_default_specs_have_unique_stems():
    stems = [spec.stem for spec in sqlrr.DEFAULT_SPECS]
    assert len(stems) == len(set(stems))


def test_fetch_local(tmp_path):
    path = tmp_path / "sql.y"
    path.write_bytes(b"%%\na: B ;\n")
    assert fetch(str(path)) == b"%%\na: B ;\n"


def test_fetch_url(monkeypatch):
    class Response:
        content = b"%%\na: B ;\n"

        def raise_for_status(self):
            pass

    calls = []

    def get(url, timeout):
        calls.append(url)
        return Response()

    monkeypatch.setattr(requests, "get", get)
    assert fetch("https://example.com/sql.y") == b"%%\na: B ;\n"
    assert calls == ["https://example.com/sql.y"]


def test_generate_all(tmp_path):
    grammar = tmp_path / "sql.y"
    grammar.write_text(SQL_Y)
    specs = tmp_path / "specs.json"
    specs.write_text(json.dumps([
        {"name": "drop_table", "stmt": "drop_stmt", "include": "'TABLE'"},
        {"name": "show_stmt"},
    ]))
    out = tmp_path / "out"
    generate_all(Config(addr=str(grammar), base_dir=out, specs_path=specs))
    assert sorted(p.name for p in out.iterdir()) == ["drop_table.html", "grammar.html", "show.html"]
    assert b"<svg" in (out / "drop_table.html").read_bytes()


def test_cli_reduce(tmp_path):
    src = tmp_path / "in.ebnf"
    src.write_bytes(BASE)
    dst = tmp_path / "out.ebnf"
    main(["--in", str(src), "--out", str(dst), "reduce", "--stmt", "set_stmt",
          "--no-descend", "--inline", "var,mode", "--exclude", "TRANSACTION"])
    assert dst.read_bytes() == b"set_stmt: 'SET' 'IDENT' '=' 'VALUE' ;\n"


def test_cli_bnf(tmp_path):
    grammar = tmp_path / "sql.y"
    grammar.write_text(SQL_Y)
    dst = tmp_path / "out.ebnf"
    main(["--out", str(dst), "--addr", str(grammar), "bnf"])
    assert dst.read_bytes().startswith(b"stmt_block: stmt_list ;\n")


def test_cli_error_exits(tmp_path):
    src = tmp_path / "in.ebnf"
    src.write_bytes(BASE)
    with pytest.raises(SystemExit) as e:
        main(["--in", str(src), "--out", str(tmp_path / "x"), "reduce", "--stmt", "nope"])
    assert e.value.code == 1


def test_cli_missing_grammar_exits(tmp_path):
    with pytest.raises(SystemExit) as e:
        main(["--addr", str(tmp_path / "missing.y"), "--out", str(tmp_path / "x"), "bnf"])
    assert e.value.code == 1


def test_cli_bad_specs_exits(tmp_path):
    grammar = tmp_path / "sql.y"
    grammar.write_text(SQL_Y)
    specs = tmp_path / "specs.json"
    specs.write_text(json.dumps([{"stmt": "drop_stmt"}]))
    with pytest.raises(SystemExit) as e:
        main(["--addr", str(grammar), "--base", str(tmp_path / "out"), "--specs", str(specs)])
    assert e.value.code == 1
