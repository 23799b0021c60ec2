from __future__ import annotations

import argparse
from pathlib import Path

from run_orchestrator.config.settings import get_settings
from run_orchestrator.storage.postgres import PostgresRunStore
from run_orchestrator.tools.search import SERVICE_FUNCTION_COLLECTION_NAME, ChromaToolSearch


def _parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description=(
            "Index registered service functions into the Chroma collection used for "
            "tool search (RUN_ORCHESTRATOR_ENABLE_TOOL_VECTOR_SEARCH=true)."
        )
    )
    parser.add_argument(
        "--cluster-id",
        action="append",
        required=True,
        help="Cluster whose functions are indexed. Repeat for several clusters.",
    )
    parser.add_argument(
        "--chroma-path",
        type=Path,
        default=Path(settings.chroma_path),
        help="Persistent Chroma directory.",
    )
    parser.add_argument(
        "--database-url",
        default=settings.resolved_database_url(),
        help="PostgreSQL URL holding the function registry.",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Drop and recreate the collection before indexing.",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    if not args.database_url:
        raise RuntimeError(
            "RUN_ORCHESTRATOR_DATABASE_URL (or ORCHESTRATOR_DATABASE_URL) is required."
        )

    args.chroma_path.mkdir(parents=True, exist_ok=True)
    registry = PostgresRunStore(args.database_url)
    search = ChromaToolSearch(str(args.chroma_path), registry)

    if args.reset:
        search.client.delete_collection(name=SERVICE_FUNCTION_COLLECTION_NAME)
        search.collection = search.client.get_or_create_collection(
            name=SERVICE_FUNCTION_COLLECTION_NAME
        )

    total = 0
    for cluster_id in args.cluster_id:
        functions = registry.list_functions(cluster_id)
        for function in functions:
            search.index(function)
        total += len(functions)
        print(f"Indexed {len(functions)} functions for cluster {cluster_id}")

    print("Tool index build complete.")
    print(f"Path: {args.chroma_path}")
    print(f"Collection: {SERVICE_FUNCTION_COLLECTION_NAME}")
    print(f"Functions: {total}")


if __name__ == "__main__":
    main()
