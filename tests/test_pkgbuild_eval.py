"""Tests for the PKGBUILD assignment scanner and expansion evaluator."""

import pytest

from aur_updater.core.errors import MalformedMetadataError, UnboundRequiredVariableError
from aur_updater.parsers.pkgbuild import (
    Evaluator,
    evaluate,
    extract_assignments,
    parse_pkgbuild,
    remove_prefix,
    remove_suffix,
    replace_pattern,
)


def expand(word: str, **variables) -> str:
    return Evaluator(variables).expand_word(word)


# ═══════════════════════════════════════════
# Assignment Extraction
# ═══════════════════════════════════════════


class TestExtractAssignments:
    def test_scalars_and_arrays(self):
        content = """
pkgname='firefox'
pkgver=128.0
depends=('glib2' "gtk3>=3.24"
         libx11)
"""
        assert extract_assignments(content) == [
            ("pkgname", "'firefox'", False),
            ("pkgver", "128.0", False),
            ("depends", "('glib2' \"gtk3>=3.24\"\n         libx11)", False),
        ]

    def test_function_bodies_skipped(self):
        content = """
pkgname=foo
build() {
  local pkgver=9
  if true; then
    cd "$srcdir/${pkgname}"
  fi
}
pkgrel=1
"""
        names = [name for name, _, _ in extract_assignments(content)]
        assert names == ["pkgname", "pkgrel"]

    def test_comments_skipped(self):
        content = "# pkgver=0\npkgver=1 # trailing comment\n"
        assert extract_assignments(content) == [("pkgver", "1", False)]

    def test_append(self):
        assert extract_assignments("depends+=(zlib)") == [("depends", "(zlib)", True)]

    def test_quoted_value_with_spaces(self):
        content = 'pkgdesc="A tool (with parens) and spaces"\n'
        assert extract_assignments(content) == [("pkgdesc", '"A tool (with parens) and spaces"', False)]

    def test_unterminated_array(self):
        with pytest.raises(MalformedMetadataError):
            extract_assignments("depends=('a' 'b'\n")


# ═══════════════════════════════════════════
# Quoting
# ═══════════════════════════════════════════


class TestQuoting:
    def test_single_quotes_are_literal(self):
        assert expand("'$pkgname'", pkgname="foo") == "$pkgname"

    def test_double_quotes_expand(self):
        assert expand('"$pkgname-1"', pkgname="foo") == "foo-1"

    def test_backslash_escape(self):
        assert expand('"\\$HOME"') == "$HOME"
        assert expand("a\\ b") == "a b"

    def test_array_nested_quotes(self):
        result = evaluate({"optdepends": "('python: for \"script\" support' \"tk: gui\")"})
        assert result["optdepends"] == ['python: for "script" support', "tk: gui"]

    def test_array_comments(self):
        result = evaluate({"source": "(a.tar.gz # upstream\n b.patch)"})
        assert result["source"] == ["a.tar.gz", "b.patch"]


# ═══════════════════════════════════════════
# Simple References
# ═══════════════════════════════════════════


class TestReferences:
    def test_dollar_name_and_braces(self):
        assert expand("$pkgname-${pkgver}.tar.gz", pkgname="foo", pkgver="1.0") == "foo-1.0.tar.gz"

    def test_unknown_left_untouched(self):
        assert expand("$srcdir/${pkgname}/${_missing%x}") == "$srcdir/${pkgname}/${_missing%x}"

    def test_command_substitution_not_executed(self):
        assert expand("$(date +%s)") == "$(date +%s)"

    def test_left_to_right(self):
        result = evaluate(
            [
                ("_pkgver", "2.0-rc1", False),
                ("pkgver", "${_pkgver//-/.}", False),
                ("source", "(https://example.org/v${pkgver}/foo-${_pkgver}.tar.gz)", False),
            ]
        )
        assert result["pkgver"] == "2.0.rc1"
        assert result["source"] == ["https://example.org/v2.0.rc1/foo-2.0-rc1.tar.gz"]

    def test_later_assignment_not_visible_earlier(self):
        result = evaluate([("a", "$b", False), ("b", "x", False)])
        assert result["a"] == "$b"

    def test_array_element_zero_without_subscript(self):
        result = evaluate([("pkgname", "(foo foo-docs)", False), ("base", "$pkgname", False)])
        assert result["base"] == "foo"

    def test_array_subscripts(self):
        ev = Evaluator({"arr": ["a", "b", "c"]})
        assert ev.expand_word("${arr[1]}") == "b"
        assert ev.expand_word("${arr[@]}") == "a b c"
        assert ev.expand_word("${#arr[@]}") == "3"

    def test_array_splice(self):
        result = evaluate([("a", "(x y)", False), ("b", '("${a[@]}" z)', False)])
        assert result["b"] == ["x", "y", "z"]

    def test_length(self):
        assert expand("${#v}", v="hello") == "5"

    def test_append_array_and_scalar(self):
        result = evaluate([("d", "(a)", False), ("d", "(b c)", True), ("s", "x", False), ("s", "y", True)])
        assert result["d"] == ["a", "b", "c"]
        assert result["s"] == "xy"


# ═══════════════════════════════════════════
# Pattern Operators
# ═══════════════════════════════════════════


class TestPatternOperators:
    def test_suffix_removal(self):
        assert expand("${v%.*}", v="foo.tar.gz") == "foo.tar"
        assert expand("${v%%.*}", v="foo.tar.gz") == "foo"

    def test_prefix_removal(self):
        assert expand("${v#*/}", v="a/b/c") == "b/c"
        assert expand("${v##*/}", v="a/b/c") == "c"

    def test_no_match_unchanged(self):
        assert expand("${v%.zip}", v="foo.tar") == "foo.tar"

    def test_quoted_pattern_is_literal(self):
        assert expand("${v%'*'}", v="a*") == "a"
        assert expand("${v%'*'}", v="ab") == "ab"

    def test_character_class(self):
        assert expand("${v%%[0-9]*}", v="abc123def") == "abc"
        assert expand("${v##[!a]}", v="xyz") == "yz"

    @pytest.mark.parametrize(
        "value,pattern",
        [("a.b.c.d", ".*"), ("x-y-z", "-*"), ("aaa", "a"), ("1.2.3", "*.")],
    )
    def test_greedy_strips_at_least_as_much(self, value, pattern):
        assert len(remove_suffix(value, pattern, longest=True)) <= len(remove_suffix(value, pattern))
        assert len(remove_prefix(value, pattern, longest=True)) <= len(remove_prefix(value, pattern))

    def test_replace_first_and_all(self):
        assert expand("${v/./_}", v="1.2.3") == "1_2.3"
        assert expand("${v//./_}", v="1.2.3") == "1_2_3"

    def test_replace_without_replacement_deletes(self):
        assert expand("${v//-}", v="a-b-c") == "abc"

    def test_replace_anchored(self):
        assert expand("${v/#v/}", v="v1.0v") == "1.0v"
        assert expand("${v/%v/x}", v="v1.0v") == "v1.0x"

    def test_replace_longest_match(self):
        assert replace_pattern("aXbXc", "X*X", "-") == "a-c"

    def test_replacement_expands(self):
        assert expand("${v/NAME/$n}", v="NAME.tar", n="foo") == "foo.tar"

    def test_case_modification(self):
        assert expand("${v^}", v="foo") == "Foo"
        assert expand("${v^^}", v="foo") == "FOO"
        assert expand("${v,,}", v="FoO") == "foo"
        assert expand("${v,}", v="FOO") == "fOO"


# ═══════════════════════════════════════════
# Default / Alternate / Required
# ═══════════════════════════════════════════


class TestConditionalOperators:
    @pytest.mark.parametrize("value", ["1", "x y", "default"])
    def test_default_when_set(self, value):
        assert expand("${x:-default}", x=value) == value

    def test_default_when_unset_or_empty(self):
        assert expand("${x:-default}") == "default"
        assert expand("${x:-default}", x="") == "default"

    def test_colonless_default_only_when_unset(self):
        assert expand("${x-default}", x="") == ""
        assert expand("${x-default}") == "default"

    def test_default_does_not_persist(self):
        ev = Evaluator()
        ev.expand_word("${x:-d}")
        assert "x" not in ev.variables

    def test_assign_default_persists(self):
        result = evaluate([("a", "${x:=fallback}", False), ("b", "$x", False)])
        assert result["a"] == "fallback"
        assert result["b"] == "fallback"
        assert result["x"] == "fallback"

    def test_alternate(self):
        assert expand("${x:+alt}", x="set") == "alt"
        assert expand("${x:+alt}", x="") == ""
        assert expand("${x:+alt}") == ""

    def test_required_raises(self):
        with pytest.raises(UnboundRequiredVariableError) as exc:
            expand("${_commit:?commit must be set}")
        assert exc.value.name == "_commit"
        assert exc.value.message == "commit must be set"

    def test_required_passes_when_set(self):
        assert expand("${x:?msg}", x="ok") == "ok"

    def test_default_with_nested_expansion(self):
        assert expand("${x:-${y}-z}", y="w") == "w-z"


# ═══════════════════════════════════════════
# Substrings
# ═══════════════════════════════════════════


class TestSubstring:
    def test_offset(self):
        assert expand("${v:6}", v="abcdef0123456789") == "0123456789"

    def test_offset_length(self):
        assert expand("${_commit:0:7}", _commit="0123456789abcdef") == "0123456"

    def test_negative_offset(self):
        assert expand("${v: -3}", v="abcdef") == "def"
        assert expand("${v:(-3):2}", v="abcdef") == "de"

    def test_negative_length(self):
        assert expand("${v:1:-1}", v="abcdef") == "bcde"

    def test_offset_past_end(self):
        assert expand("${v:10}", v="abc") == ""


# ═══════════════════════════════════════════
# Full PKGBUILD
# ═══════════════════════════════════════════


PKGBUILD = """
# Maintainer: Someone <someone@example.org>
_name=Foo-Tool
pkgname=foo-tool
pkgver=1.4.2
pkgrel=3
epoch=1
pkgdesc="Foo tool for ${_name%%-*} users"
arch=('x86_64' 'aarch64')
url="https://github.com/x/${_name}"
license=('MIT')
depends=('glibc' 'zlib>=1.2')
makedepends=('cmake' 'git')
source=("${pkgname}-${pkgver}.tar.gz::${url}/archive/v${pkgver}.tar.gz"
        "git+${url}.git#tag=v${pkgver}")
source_x86_64=("https://example.org/${pkgver}/blob-x86_64.bin")
sha256sums=('1111' 'SKIP')
sha256sums_x86_64=('2222')

build() {
  cd "${_name}-${pkgver}"
  cmake -B build
}

package() {
  DESTDIR="$pkgdir" cmake --install build
}
"""


class TestParsePkgbuild:
    def test_record_fields(self):
        record = parse_pkgbuild(PKGBUILD)
        assert record.base_name == "foo-tool"
        assert record.version == "1.4.2"
        assert record.full_version == "1:1.4.2-3"
        assert record.description == "Foo tool for Foo users"
        assert record.homepage == "https://github.com/x/Foo-Tool"
        assert record.architectures == ("x86_64", "aarch64")

    def test_sources_expanded(self):
        record = parse_pkgbuild(PKGBUILD)
        entries = record.source_entries("x86_64")
        assert entries[0].rename_as == "foo-tool-1.4.2.tar.gz"
        assert entries[0].url == "https://github.com/x/Foo-Tool/archive/v1.4.2.tar.gz"
        assert entries[1].transport == "git"
        assert entries[1].fragment == "tag=v1.4.2"
        assert entries[2].url == "https://example.org/1.4.2/blob-x86_64.bin"
        assert record.checksum_spec("x86_64").values == ("1111", "SKIP", "2222")

    def test_split_package(self):
        record = parse_pkgbuild("pkgbase=foo\npkgname=(foo foo-docs)\npkgver=1\npkgrel=1\narch=(any)\n")
        assert record.base_name == "foo"
        assert record.variant_names == ["foo", "foo-docs"]
        assert record.variants[1].architectures == ("any",)

    def test_missing_pkgname(self):
        with pytest.raises(MalformedMetadataError):
            parse_pkgbuild("pkgver=1\n")

    def test_required_variable_propagates(self):
        with pytest.raises(UnboundRequiredVariableError):
            parse_pkgbuild("pkgname=foo\n_v=${_unset:?needed}\n")
