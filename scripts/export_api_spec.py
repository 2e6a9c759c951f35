#!/usr/bin/env python3
"""
Export the OpenAPI document and response JSON schemas.

This script generates:
- api/openapi.json - Full OpenAPI 3 specification
- api/schemas/*.json - JSON schema for each response model

Run it after changing routes or models so front-end clients stay in step.
"""

import json
import sys
from pathlib import Path

# Add project root to path
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root))

from chess_stats.app import app
from chess_stats.models import (
    CacheStatsResponse,
    GameDetail,
    GameListResponse,
    HeatmapResponse,
    OpeningsResponse,
    RatingSeriesResponse,
    StreaksResponse,
    SummaryResponse,
    SyncResult,
    SyncStatus,
)

RESPONSE_MODELS = {
    "SummaryResponse": SummaryResponse,
    "RatingSeriesResponse": RatingSeriesResponse,
    "OpeningsResponse": OpeningsResponse,
    "StreaksResponse": StreaksResponse,
    "HeatmapResponse": HeatmapResponse,
    "GameListResponse": GameListResponse,
    "GameDetail": GameDetail,
    "SyncResult": SyncResult,
    "SyncStatus": SyncStatus,
    "CacheStatsResponse": CacheStatsResponse,
}


def export_openapi_spec(output_path: Path):
    """Write the application's OpenAPI document."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(app.openapi(), f, indent=2)

    print(f"[OK] Exported OpenAPI spec to {output_path}")


def export_json_schemas(output_dir: Path):
    output_dir.mkdir(parents=True, exist_ok=True)

    for name, model in RESPONSE_MODELS.items():
        output_path = output_dir / f"{name}.json"
        with open(output_path, "w") as f:
            json.dump(model.model_json_schema(), f, indent=2)

        print(f"[OK] Exported {name} schema to {output_path}")


def main():
    api_dir = repo_root / "api"

    print("Exporting API specification files...\n")
    export_openapi_spec(api_dir / "openapi.json")
    export_json_schemas(api_dir / "schemas")
    print("\nDone.")


if __name__ == "__main__":
    main()
