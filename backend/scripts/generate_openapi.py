#!/usr/bin/env python3
import argparse
import json
import os
import sys
from pathlib import Path


def main() -> int:
    repo_root = Path(__file__).resolve().parents[2]
    backend_root = Path(__file__).resolve().parents[1]

    parser = argparse.ArgumentParser(description="Export the Event Review OpenAPI schema as JSON.")
    parser.add_argument(
        "--output",
        type=Path,
        default=repo_root / "docs" / "openapi.json",
        help="Destination file (default: docs/openapi.json).",
    )
    args = parser.parse_args()

    sys.path.insert(0, str(backend_root))

    os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
    os.environ.setdefault("SECRET_KEY", "openapi-export-secret")
    os.environ.setdefault("EMAIL_ENABLED", "false")

    from eventreview.api import app  # noqa: PLC0415

    schema = app.openapi()
    out_path = args.output.resolve()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(schema, indent=2, sort_keys=True, ensure_ascii=False) + "\n", encoding="utf-8")
    print(f"Wrote {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
