"""
Batch-geocode project addresses and write coordinates back to the project store.
"""

import logging
import sys
from typing import Dict

from core.config import MapSettings
from core.project_store import ProjectStore
from loaders.geocoder import Geocoder

log = logging.getLogger("tools.geocode_projects")


def geocode_projects(
    store: ProjectStore,
    geocoder: Geocoder,
    organization_id=None,
    project_id=None,
    status: str = "pending",
    force: bool = False,
    limit=None
) -> Dict[str, int]:
    """
    Geocode every matching project.

    Returns:
        {"total", "geocoded", "failed"}
    """
    projects = store.list_for_geocoding(
        organization_id=organization_id,
        project_id=project_id,
        status=status,
        force=force,
        limit=limit,
    )
    stats = {"total": len(projects), "geocoded": 0, "failed": 0}
    if not projects:
        log.warning("No projects found matching criteria.")
        return stats

    log.info(f"Found {len(projects)} projects to geocode")
    for project in projects:
        location = geocoder.geocode_project(project)
        if location is None:
            store.mark_geocoding_failed(project.id)
            stats["failed"] += 1
            continue
        store.save_geocoding_result(
            project.id,
            location.latitude,
            location.longitude,
            location.to_project_address(project.id),
        )
        stats["geocoded"] += 1

    log.info(f"Geocoding finished: {stats['geocoded']} geocoded, {stats['failed']} failed")
    return stats


def show_statistics(stats: Dict, organization_id: int) -> None:
    """Print the per-status geocoding summary of an organization."""
    print("=" * 40)
    print(f"GEOCODING STATISTICS (organization {organization_id})")
    print("=" * 40)
    print(f"Total projects: {stats['total']}")
    print(f"Geocoded:       {stats['geocoded']}")
    print(f"Pending:        {stats['pending']}")
    print(f"Failed:         {stats['failed']}")
    print(f"Manual:         {stats['manual']}")
    print(f"Geocoded %:     {stats['geocoded_percentage']}%")


def main(argv=None):
    """CLI interface for batch geocoding."""
    import argparse

    parser = argparse.ArgumentParser(description="Geocode projects by their addresses (Nominatim)")
    parser.add_argument("--organization", type=int, help="Organization ID to geocode")
    parser.add_argument("--project", type=int, help="Specific project ID to geocode")
    parser.add_argument("--status", default="pending", choices=["pending", "failed", "all"],
                        help="Geocoding status filter")
    parser.add_argument("--limit", type=int, help="Maximum number of projects to process")
    parser.add_argument("--force", action="store_true", help="Re-geocode even if already geocoded")
    parser.add_argument("--db", help="Project database path (default from MAPENGINE_DATABASE_PATH)")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    settings = MapSettings.from_env()
    store = ProjectStore(args.db or settings.database_path)
    geocoder = Geocoder(
        user_agent=settings.geocoder_user_agent,
        min_interval=settings.geocoder_min_interval,
    )

    stats = geocode_projects(
        store,
        geocoder,
        organization_id=args.organization,
        project_id=args.project,
        status=args.status,
        force=args.force,
        limit=args.limit,
    )
    if args.organization is not None:
        show_statistics(store.geocoding_statistics(args.organization), args.organization)
    return 0 if stats["failed"] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
