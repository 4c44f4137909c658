"""
Report design groups that break the membership rules (fewer than two members,
or a primary picture that is not a member).

Usage:
  python scripts/check_groups.py          # report only, exit 1 if anything is wrong
  python scripts/check_groups.py --fix    # dissolve undersized groups, repair primaries
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.gallery.modules.design_groups.engine import MIN_GROUP_SIZE, GroupingEngine  # noqa: E402
from app.gallery.modules.design_groups.models import DesignGroup  # noqa: E402
from scripts._db_utils import database_url_from_env, script_session  # noqa: E402


def check(*, database_url: str | None = None, fix: bool = False) -> list[tuple[int, str]]:
    with script_session(database_url_from_env(database_url)) as s:
        engine = GroupingEngine(s)
        problems = engine.check_invariants()
        if fix:
            for group_id, _problem in problems:
                group = s.get(DesignGroup, group_id)
                members = engine.members(group_id)
                if len(members) < MIN_GROUP_SIZE:
                    engine.delete_group(group)
                else:
                    engine.update_group(group, primary_id=members[0].id)
    return problems


def main() -> None:
    fix = "--fix" in sys.argv[1:]
    problems = check(fix=fix)
    if not problems:
        print("All design groups OK.")
        return
    for group_id, problem in problems:
        print(f"design_group={group_id} problem={problem}")
    if fix:
        print(f"Repaired {len(problems)} design group(s).")
        return
    sys.exit(1)


if __name__ == "__main__":
    main()
