from __future__ import annotations

import pytest

from fakes import FakeAdapter


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()
