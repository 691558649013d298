from __future__ import annotations

import copy
import sys
from pathlib import Path
from typing import Any, Dict

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


TIMESTAMP = "2026-01-05T10:00:00Z"

_PLAN: Dict[str, Any] = {
    "meta": {
        "version": "1.0.0",
        "sessionId": "sess-1",
        "createdAt": TIMESTAMP,
        "updatedAt": TIMESTAMP,
        "isApproved": False,
        "reviewCount": 0,
    },
    "steps": [
        {
            "id": "s1",
            "parentId": None,
            "orderIndex": 0,
            "title": "Create session store",
            "description": "Create the session store module with an aiosqlite connection and schema bootstrap.",
            "status": "pending",
            "complexity": "low",
            "metadata": {},
        },
        {
            "id": "s2",
            "parentId": None,
            "orderIndex": 1,
            "title": "Wire the stage machine",
            "description": "Implement stage transitions on top of the store, including queue promotion on backout.",
            "status": "pending",
            "complexity": "medium",
            "metadata": {},
        },
    ],
    "dependencies": {
        "stepDependencies": [{"stepId": "s2", "dependsOn": "s1", "reason": "needs the store"}],
        "externalDependencies": [
            {
                "name": "aiosqlite",
                "type": "pypi",
                "reason": "Async SQLite driver for the session table",
                "requiredBy": ["s1"],
            }
        ],
    },
    "testCoverage": {
        "framework": "pytest",
        "requiredTestTypes": ["unit"],
        "stepCoverage": [{"stepId": "s1", "requiredTestTypes": ["unit"], "coverageTarget": 80}],
    },
    "acceptanceMapping": {
        "mappings": [
            {
                "criterionId": "ac-1",
                "criterionText": "Sessions survive a restart",
                "implementingStepIds": ["s1", "s2"],
                "isFullyCovered": True,
            }
        ],
        "updatedAt": TIMESTAMP,
    },
}


def build_plan() -> Dict[str, Any]:
    """Return a fresh copy of a plan that passes every section check."""
    return copy.deepcopy(_PLAN)


@pytest.fixture
def plan_document() -> Dict[str, Any]:
    return build_plan()
