from __future__ import annotations

import argparse
import csv
import json
from pathlib import Path
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from form_suggest.models import Base, SessionLocal, Suggestion


def _serialize(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def table_schema() -> dict[str, Any]:
    table = Base.metadata.tables[Suggestion.__tablename__]
    return {
        table.name: {
            "columns": [
                {
                    "name": col.name,
                    "type": str(col.type),
                    "nullable": col.nullable,
                    "primary_key": col.primary_key,
                    "default": str(col.default.arg) if col.default is not None else None,
                }
                for col in table.columns
            ],
            "unique": [
                [col.name for col in constraint.columns]
                for constraint in table.constraints
                if constraint.__class__.__name__ == "UniqueConstraint"
            ],
        }
    }


def export_suggestions(db, out_dir: Path, field: str | None = None) -> int:
    """Write suggestions.csv and schema.json into out_dir; return the row count."""
    out_dir.mkdir(parents=True, exist_ok=True)
    table = Base.metadata.tables[Suggestion.__tablename__]
    columns = [col.name for col in table.columns]

    stmt = select(table).order_by(table.c.field_identifier, table.c.usage_count.desc(), table.c.id)
    if field:
        stmt = stmt.where(table.c.field_identifier == field)

    count = 0
    csv_path = out_dir / f"{table.name}.csv"
    with csv_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(columns)
        try:
            rows = db.execute(stmt).fetchall()
        except SQLAlchemyError as exc:
            writer.writerow([f"ERROR: {exc}"])
            rows = []
        for row in rows:
            writer.writerow([_serialize(row._mapping.get(col)) for col in columns])
            count += 1

    (out_dir / "schema.json").write_text(json.dumps(table_schema(), indent=2))
    return count


def main():
    parser = argparse.ArgumentParser(description="Export stored form suggestions.")
    parser.add_argument("--out", required=True, help="Output directory")
    parser.add_argument("--field", help="Only export suggestions for this field identifier")
    args = parser.parse_args()

    with SessionLocal() as db:
        count = export_suggestions(db, Path(args.out), args.field)
    print(f"Exported {count} suggestions to {args.out}")


if __name__ == "__main__":
    main()
