"""Export the OpenAPI schema of the Agent Manager X API to a static JSON file.

Usage:
    python -m scripts.export_openapi [output_path]

Defaults to docs/openapi.json if no path is given.
"""

import json
import sys
from pathlib import Path


def main() -> None:
    from agent_manager.dashboard_api import app

    schema = app.openapi()
    output = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("docs/openapi.json")
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(schema, indent=2) + "\n", encoding="utf-8")
    print(f"Exported OpenAPI schema to {output} ({output.stat().st_size:,} bytes)")


if __name__ == "__main__":
    main()
