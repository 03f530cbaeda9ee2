from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List, Optional

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import (  # noqa: E402
    COMPETENCY_LEVELS,
    Carer,
    CarePackage,
    CarerPackageAssignment,
    CompetencyRating,
    PackageTaskAssignment,
    Task,
    build_engine,
    build_session_factory,
    init_database,
)
from logger import configure_logging, get_logger  # noqa: E402
from policy import ensure_default_policy  # noqa: E402

logger = get_logger(__name__)

TASKS = ["Medication", "Personal care", "Moving and handling", "PEG feeding"]

PACKAGES = [
    {"name": "Harbour View", "postcode": "PL1 2AB", "tasks": ["Medication", "Personal care"]},
    {"name": "Elm Cottage", "postcode": "PL4 7QT", "tasks": ["Moving and handling", "PEG feeding", "Medication"]},
    {"name": "Respite Flat", "postcode": "PL6 5RS", "tasks": []},
]

CARERS = [
    {
        "name": "Amira Patel",
        "email": "amira.patel@example.org",
        "packages": ["Harbour View", "Elm Cottage"],
        "ratings": {"Medication": "EXPERT", "Personal care": "PROFICIENT", "Moving and handling": "COMPETENT"},
    },
    {
        "name": "Ben Okafor",
        "email": "ben.okafor@example.org",
        "packages": ["Harbour View"],
        "ratings": {"Medication": "ADVANCED_BEGINNER", "Personal care": "NOT_COMPETENT"},
    },
    {
        "name": "Carys Llewellyn",
        "email": "carys.llewellyn@example.org",
        "packages": ["Elm Cottage"],
        "ratings": {"PEG feeding": "COMPETENT", "Medication": "COMPETENT", "Moving and handling": "PROFICIENT"},
    },
    {
        "name": "Dominik Nowak",
        "email": "dominik.nowak@example.org",
        "packages": [],
        "ratings": {"Personal care": "NOT_ASSESSED"},
    },
]


def _get_or_create(session, model, name: str, **fields):
    existing = session.scalars(select(model).where(model.name == name)).first()
    if existing:
        return existing, False
    record = model(name=name, **fields)
    session.add(record)
    session.flush()
    return record, True


def normalize_level(level: str, carer_name: str) -> Optional[str]:
    label = (level or "").strip().upper()
    if label in COMPETENCY_LEVELS:
        return label
    logger.warning("[seed] Skipping unknown competency level %r for %s", level, carer_name)
    return None


def seed(session_factory) -> Dict[str, Dict[str, str]]:
    """Load the demo roster; running it twice leaves the data unchanged."""
    ids: Dict[str, Dict[str, str]] = {"tasks": {}, "packages": {}, "carers": {}}
    created: List[str] = []
    with session_factory.begin() as session:
        for task_name in TASKS:
            task, is_new = _get_or_create(session, Task, task_name)
            ids["tasks"][task_name] = task.id
            if is_new:
                created.append(f"task {task_name}")

        for entry in PACKAGES:
            package, is_new = _get_or_create(session, CarePackage, entry["name"], postcode=entry["postcode"])
            ids["packages"][entry["name"]] = package.id
            if not is_new:
                continue
            created.append(f"package {entry['name']}")
            for task_name in entry["tasks"]:
                session.add(PackageTaskAssignment(package_id=package.id, task_id=ids["tasks"][task_name]))

        for entry in CARERS:
            carer, is_new = _get_or_create(session, Carer, entry["name"], email=entry["email"])
            ids["carers"][entry["name"]] = carer.id
            if not is_new:
                continue
            created.append(f"carer {entry['name']}")
            for package_name in entry["packages"]:
                session.add(CarerPackageAssignment(carer_id=carer.id, package_id=ids["packages"][package_name]))
            for task_name, level in entry["ratings"].items():
                label = normalize_level(level, entry["name"])
                if label is None:
                    continue
                session.add(CompetencyRating(carer_id=carer.id, task_id=ids["tasks"][task_name], level=label))

    for item in created:
        logger.info("[seed] Added %s", item)
    if not created:
        logger.info("[seed] Demo roster already present")
    return ids


def main() -> None:
    configure_logging()
    engine = build_engine()
    init_database(engine)
    session_factory = build_session_factory(engine)
    ensure_default_policy(session_factory)
    seed(session_factory)


if __name__ == "__main__":
    main()
