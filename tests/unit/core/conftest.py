"""Shared fixtures for core unit tests"""

import pytest

from mdreveal.core.ast.builder import AstBuilder
from mdreveal.core.parser.incremental import IncrementalParser


SAMPLE_MD = """\
# Heading 1

A paragraph with **bold** text.

## Heading 2

- item one
- item two

```python
print("hello")
```

---

Footer paragraph.
"""


@pytest.fixture(name="sample_md")
def sample_md_fixture():
    return SAMPLE_MD


@pytest.fixture(name="builder")
def builder_fixture():
    return AstBuilder()


@pytest.fixture(name="parser")
def parser_fixture():
    return IncrementalParser()
