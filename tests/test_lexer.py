"""Tests for the pull-model lexer."""

import io

from kaleido import LEX, ErrorSink, Lexer, Token, tokenize


def kinds(text):
    return [t.kind for t in tokenize(text)]


class CountingStream(io.StringIO):
    def __init__(self, text):
        super().__init__(text)
        self.reads = 0

    def readline(self, *args):
        self.reads += 1
        return super().readline(*args)


class TestTokens:
    def test_keywords_and_identifiers(self) -> None:
        toks = tokenize("def extern define foo x1")
        assert toks == [
            Token("DEF", "def"),
            Token("EXTERN", "extern"),
            Token("IDENTIFIER", "define"),
            Token("IDENTIFIER", "foo"),
            Token("IDENTIFIER", "x1"),
            Token("EOF"),
        ]

    def test_numbers(self) -> None:
        toks = tokenize("4 2.5 1. .5")
        assert [t.value for t in toks[:-1]] == [4.0, 2.5, 1.0, 0.5]
        assert all(t.kind == "NUMBER" for t in toks[:-1])

    def test_single_character_tokens(self) -> None:
        toks = tokenize("(a,b);+_")
        assert [(t.kind, t.value) for t in toks] == [
            ("CHAR", "("),
            ("IDENTIFIER", "a"),
            ("CHAR", ","),
            ("IDENTIFIER", "b"),
            ("CHAR", ")"),
            ("CHAR", ";"),
            ("CHAR", "+"),
            ("CHAR", "_"),
            ("EOF", None),
        ]

    def test_identifier_stops_at_non_alphanumeric(self) -> None:
        assert [t.value for t in tokenize("ab_c")[:-1]] == ["ab", "_", "c"]

    def test_whitespace_is_skipped(self) -> None:
        assert kinds(" \t1 \r\n\n 2\f") == ["NUMBER", "NUMBER", "EOF"]

    def test_empty_input(self) -> None:
        assert kinds("") == ["EOF"]


class TestComments:
    def test_comment_is_transparent(self) -> None:
        assert tokenize("# a comment\n4") == [Token("NUMBER", 4.0), Token("EOF")]

    def test_comment_at_end_of_input(self) -> None:
        assert kinds("1 # trailing, no newline") == ["NUMBER", "EOF"]

    def test_comment_after_code_on_each_line(self) -> None:
        assert kinds("a # x\nb # y\n") == ["IDENTIFIER", "IDENTIFIER", "EOF"]

    def test_carriage_return_ends_comment(self) -> None:
        assert tokenize("# old mac line\r4\n") == [Token("NUMBER", 4.0), Token("EOF")]


class TestMalformedNumbers:
    def test_two_dots_is_rejected(self) -> None:
        sink = ErrorSink()
        toks = tokenize("1.2.3", sink)
        assert toks[0] == Token("BADNUMBER", "1.2.3")
        assert sink.count(LEX) == 1
        assert "malformed number literal '1.2.3'" in sink.errors[0].msg

    def test_lone_dot_is_rejected(self) -> None:
        sink = ErrorSink()
        assert tokenize(".", sink)[0].kind == "BADNUMBER"
        assert len(sink.errors) == 1

    def test_valid_numbers_report_nothing(self) -> None:
        sink = ErrorSink()
        tokenize("1 2.0 .25", sink)
        assert sink.ok()


class TestPullModel:
    def test_eof_is_sticky(self) -> None:
        lexer = Lexer(io.StringIO("x"), ErrorSink())
        assert lexer.next_token().kind == "IDENTIFIER"
        for _ in range(3):
            assert lexer.next_token().kind == "EOF"

    def test_reads_lines_only_on_demand(self) -> None:
        stream = CountingStream("1;\n2;\n")
        lexer = Lexer(stream, ErrorSink())
        assert lexer.next_token().value == 1.0
        assert lexer.next_token().value == ";"
        assert stream.reads == 1
        assert lexer.next_token().value == 2.0
        assert stream.reads == 2

    def test_locations(self) -> None:
        toks = tokenize("a\n  bc")
        assert (toks[0].loc.line, toks[0].loc.col) == (1, 1)
        assert (toks[1].loc.line, toks[1].loc.col) == (2, 3)
        assert toks[1].loc.text == "  bc"
