"""End-to-end evaluation through the MCJIT engine."""

import io

import pytest

from kaleido import ANON_NAME, JIT, SEMANTIC, Options, Session, run_source


def evaluate(text, **opts):
    s = run_source(text, Options(**opts))
    assert s.es.ok(), [d.msg for d in s.es.errors]
    return [o.value for o in s.outcomes if o.kind == "expr"]


class TestEvaluation:
    def test_arithmetic(self) -> None:
        assert evaluate("4+5; 2*3-1; 1-2-3;") == [9.0, 5.0, -4.0]

    @pytest.mark.parametrize("src, expected", [("1 < 2;", 1.0), ("2 < 1;", 0.0), ("2 < 2;", 0.0)])
    def test_comparison(self, src, expected) -> None:
        assert evaluate(src) == [expected]

    def test_definition_and_call(self) -> None:
        assert evaluate("def add(a b) a+b; add(2, 3) * 2;") == [10.0]

    def test_calls_across_units(self) -> None:
        assert evaluate("def inc(x) x+1; def twice(x) inc(x)*2; twice(3);") == [8.0]

    def test_unoptimized(self) -> None:
        assert evaluate("def sq(x) x*x; sq(1.5);", opt_level=0) == [2.25]

    def test_output(self) -> None:
        out = io.StringIO()
        run_source("0.5 + 0.25;", Options(), out)
        assert "Evaluated to 0.750000" in out.getvalue()


class TestBuiltins:
    def test_printd(self, capsys) -> None:
        assert evaluate("extern printd(x); printd(42);") == [0.0]
        assert "42.000000" in capsys.readouterr().err

    def test_putchard(self, capsys) -> None:
        assert evaluate("extern putchard(c); putchard(72) + putchard(105);") == [0.0]
        assert "Hi" in capsys.readouterr().err


class TestLinkFailures:
    @pytest.mark.parametrize("src, name", [
        ("def f(a) b; f(1); 2+2;", "f"),
        ("extern bar(x); bar(1); 2+2;", "bar"),
    ])
    def test_call_without_body_is_reported(self, src, name) -> None:
        out = io.StringIO()
        s = run_source(src, Options(), out)
        assert s.es.count(SEMANTIC) == len(s.es.errors)
        assert s.es.errors[-1].msg == f"unresolved function '{name}'"
        assert [o.value for o in s.outcomes if o.kind == "expr"] == [4.0]
        assert "Evaluated to 4.000000" in out.getvalue()

    def test_definition_calling_missing_function_is_rejected(self) -> None:
        s = run_source("extern nothere(x); def g(x) nothere(x); 1;", Options())
        assert [e.msg for e in s.es.errors] == ["unresolved function 'nothere'"]
        assert [o.kind for o in s.outcomes] == ["extern", "expr"]

    def test_engine_failure_does_not_end_session(self) -> None:
        class BrokenJIT(JIT):
            def compile(self, module):
                raise RuntimeError("module failed to verify")

        s = Session(io.StringIO("1; def f(x) x; 2;"), Options(), out=io.StringIO())
        s.jit = BrokenJIT()
        assert s.run() == 1
        assert [e.msg for e in s.es.errors] == ["module failed to verify"] * 3
        assert s.backend.lookup_function(ANON_NAME) is None
