# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

import pytest

from code_context.analysis.patterns import PathFilter, matches


@pytest.mark.parametrize(
    "path,pattern,expected",
    [
        ("src/app.ts", "**/*.ts", True),
        ("app.ts", "**/*.ts", True),
        ("src/app.tsx", "**/*.ts", False),
        ("src/app.ts", "src/*.ts", True),
        ("src/lib/app.ts", "src/*.ts", False),
        ("src/lib/app.ts", "src/**", True),
        ("node_modules/x/index.js", "**/node_modules/**", True),
        ("a/node_modules/x/index.js", "**/node_modules/**", True),
        ("somefile.tsx", "somefile.tsx", True),
        ("file1.py", "file?.py", True),
        ("file10.py", "file?.py", False),
        ("a.c", "*.[ch]", True),
        ("a.o", "*.[!ch]", True),
        ("docs/a+b.md", "docs/a+b.md", True),
    ],
)
def test_glob_matching(path, pattern, expected):
    assert matches(path, pattern) is expected


def test_path_filter_include_and_exclude():
    flt = PathFilter(include=["src/**"], exclude=["**/*.test.ts"])
    assert flt
    assert flt.allows("src/app.ts")
    assert not flt.allows("src/app.test.ts")
    assert not flt.allows("docs/readme.md")


def test_empty_filter_allows_everything():
    flt = PathFilter([], ["", "  "])
    assert not flt
    assert flt.allows("anything/at/all.txt")
