#!/usr/bin/env python3
"""Bulk-load scheduled-task templates from a YAML file.

Usage examples:
    # Validate only
    uv run python scripts/import_templates.py templates.yaml --dry-run

    # Import, skipping templates whose name already exists
    uv run python scripts/import_templates.py templates.yaml

File format::

    templates:
      - name: Weekly report
        title: Submit the weekly report
        schedule: "0 9 * * 1"
        timezone: Asia/Shanghai
        target_tag: reporting
        deadline_days: 2
"""

import argparse
import asyncio
import sys
from pathlib import Path

import yaml
from pydantic import ValidationError

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.scheduler.store import TemplateStore
from src.webhooks.schemas import TemplateBody


def load_templates(path: Path) -> list[TemplateBody]:
    """Parse and validate every entry. Raises SystemExit listing all errors."""
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    entries = data.get("templates", []) if isinstance(data, dict) else data
    bodies, errors = [], []
    for i, entry in enumerate(entries, 1):
        try:
            bodies.append(TemplateBody.model_validate(entry))
        except ValidationError as exc:
            errors.append(f"  #{i} ({(entry or {}).get('name', '?')}): {exc.errors()[0]['msg']}")
    if errors:
        print(f"{len(errors)} invalid template(s):", file=sys.stderr)
        print("\n".join(errors), file=sys.stderr)
        raise SystemExit(1)
    return bodies


async def import_templates(bodies: list[TemplateBody], store: TemplateStore) -> int:
    existing = {t.name for t in await store.list_templates()}
    added = 0
    for body in bodies:
        if body.name in existing:
            print(f"skip   {body.name} (exists)")
            continue
        template = await store.add(body.to_template())
        existing.add(template.name)
        added += 1
        print(f"added  {template.name} [{template.schedule} {template.timezone}] {template.id}")
    return added


def main() -> None:
    parser = argparse.ArgumentParser(description="Import scheduled-task templates from YAML")
    parser.add_argument("file", type=Path, help="YAML file with a 'templates' list")
    parser.add_argument("--dry-run", action="store_true", help="Validate without writing")
    args = parser.parse_args()

    bodies = load_templates(args.file)
    print(f"{len(bodies)} template(s) valid")
    if args.dry_run:
        return
    added = asyncio.run(import_templates(bodies, TemplateStore.get()))
    print(f"Imported {added} template(s)")


if __name__ == "__main__":
    main()
