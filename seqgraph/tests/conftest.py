# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Shared fixtures: every test starts from a fresh CPU device registry."""

import numpy as np
import pytest

from seqgraph.allocator import reset_devices


@pytest.fixture(autouse=True)
def fresh_devices():
    reset_devices()
    np.random.seed(42)
    yield
    reset_devices()
