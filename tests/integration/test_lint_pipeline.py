"""
End-to-end tests: dispatcher, scheduler, invoker and translator together,
with a stub sqlfluff executable standing in for the real one.
"""

import asyncio
import os
import sys
import textwrap
from pathlib import Path

import pytest
from lsprotocol import types

from sqlfluff_lsp.analyzer import SqlfluffInvoker

pytestmark = pytest.mark.skipif(os.name == "nt", reason="stub executable needs a shebang")

# Reports a spacing violation on every double space, like LT01 does, and
# "fixes" by collapsing double spaces.
STUB = """\
import json
import sys

args = sys.argv[1:]
text = sys.stdin.read()
dialect = next(a.split("=", 1)[1] for a in args if a.startswith("--dialect="))

if args[0] == "fix":
    while "  " in text:
        text = text.replace("  ", " ")
    sys.stdout.write(text)
    sys.exit(0)

violations = []
for number, line in enumerate(text.splitlines(), start=1):
    column = line.find("  ")
    if column >= 0:
        violations.append(
            {
                "start_line_no": number,
                "start_line_pos": column + 1,
                "end_line_no": number,
                "end_line_pos": column + 3,
                "code": "LT01",
                "description": f"Expected only single space ({dialect}).",
            }
        )
if "--format=github-annotation-native" in args:
    if violations:
        print("::group::stdin")
        for v in violations:
            print(
                f"::warning title=SQLFluff,file=stdin,line={v['start_line_no']},"
                f"col={v['start_line_pos']},endLine={v['end_line_no']},"
                f"endColumn={v['end_line_pos']}::{v['code']}: {v['description']}"
            )
        print("::endgroup::")
else:
    print(json.dumps([{"filepath": "stdin", "violations": violations}]))
sys.exit(1 if violations else 0)
"""


@pytest.fixture
def stub_sqlfluff(tmp_path: Path) -> str:
    path = tmp_path / "bin" / "sqlfluff"
    path.parent.mkdir()
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(STUB), encoding="utf-8")
    path.chmod(0o755)
    return str(path)


@pytest.fixture
def stub_invoker(stub_sqlfluff: str) -> SqlfluffInvoker:
    return SqlfluffInvoker(stub_sqlfluff, timeout=30)


class TestLintPipeline:
    """Test suite for linting and formatting through a real subprocess."""

    def test_diagnostics_follow_edits(self, harness_factory, stub_invoker) -> None:
        uri = "file:///workspace/a.sql"

        async def scenario():
            h = harness_factory(stub_invoker, dialect="postgres")
            await h.initialize()
            h.open(uri, "SELECT 1\n", version=0)
            await h.settle()
            h.change(uri, 1, "SELECT  1\n")
            await h.settle()
            return h

        h = asyncio.run(scenario())

        first, second = h.client.published
        assert (first.version, first.diagnostics) == (0, [])
        assert second.version == 1
        [diagnostic] = second.diagnostics
        assert diagnostic.code == "LT01"
        assert diagnostic.message == "Expected only single space (postgres)."
        assert diagnostic.range == types.Range(
            start=types.Position(line=0, character=6),
            end=types.Position(line=0, character=8),
        )

    def test_native_annotation_format(self, harness_factory, stub_sqlfluff) -> None:
        uri = "file:///workspace/a.sql"
        invoker = SqlfluffInvoker(stub_sqlfluff, output_format="github-annotation-native")

        async def scenario():
            h = harness_factory(invoker)
            await h.initialize()
            h.open(uri, "SELECT 1\n", version=0)
            await h.settle()
            h.change(uri, 1, "SELECT  1\n")
            await h.settle()
            return h

        h = asyncio.run(scenario())

        clean, dirty = h.client.published
        assert clean.diagnostics == []
        [diagnostic] = dirty.diagnostics
        assert diagnostic.code == "LT01"
        assert diagnostic.message == "Expected only single space (ansi)."
        assert diagnostic.range.start == types.Position(line=0, character=6)

    def test_formatting(self, harness_factory, stub_invoker, apply_edits) -> None:
        uri = "file:///workspace/a.sql"
        text = "SELECT  a,\n b\nFROM  t\n"

        async def scenario():
            h = harness_factory(stub_invoker)
            await h.initialize()
            h.open(uri, text)
            edits = await h.format(uri)
            await h.settle()
            return edits

        edits = asyncio.run(scenario())

        assert len(edits) == 2
        assert apply_edits(text, edits) == "SELECT a,\n b\nFROM t\n"

    def test_missing_binary_reported_once(self, harness_factory, tmp_path: Path) -> None:
        invoker = SqlfluffInvoker(str(tmp_path / "missing" / "sqlfluff"))

        async def scenario():
            h = harness_factory(invoker)
            await h.initialize()
            h.open("file:///workspace/a.sql", "select 1\n")
            h.open("file:///workspace/b.sql", "select 2\n")
            await h.settle()
            return h

        h = asyncio.run(scenario())

        assert len(h.client.published) == 2
        assert len(h.client.messages) == 1
