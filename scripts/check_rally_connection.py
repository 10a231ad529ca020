#!/usr/bin/env python3
"""
Check the Rally connection for local development.

Verifies the configured API key and lists the workspaces, projects and sprints
it can see, which is what a tracker needs to be created.
"""

import sys
from pathlib import Path

# Add the src directory to the path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sprint_watch.config import get_settings
from sprint_watch.exceptions import SprintWatchError
from sprint_watch.rally_client import RallyClient


async def check_rally_connection(workspace_id: str | None, project_id: str | None):
    """Check Rally authentication and list selectable scopes."""
    print("🔍 Checking Rally connection...")

    settings = get_settings()
    print("📋 Configuration:")
    print(f"   Base URL: {settings.rally_base_url}")

    if not settings.has_credentials:
        print("❌ No API key configured. Please set RALLY_API_KEY")
        return False

    client = RallyClient(settings.rally_config, settings.retry_config)
    try:
        await client.test_connection()
        print("✅ Rally authentication successful!")

        if workspace_id is None:
            workspaces = await client.list_workspaces()
            print(f"✅ Found {len(workspaces)} workspaces")
            for workspace in workspaces:
                print(f"   - {workspace.object_id}: {workspace.name}")
            return True

        if project_id is None:
            projects = await client.list_projects(workspace_id)
            print(f"✅ Found {len(projects)} projects")
            for project in projects:
                print(f"   - {project.object_id}: {project.name}")
            return True

        iterations = await client.list_project_iterations(workspace_id, project_id)
        print(f"✅ Found {len(iterations)} sprints")
        for iteration in iterations:
            print(
                f"   - {iteration.object_id}: {iteration.name} "
                f"({iteration.start_date} .. {iteration.end_date})"
            )
        return True

    except SprintWatchError as e:
        print(f"❌ Rally connection failed: {e}")
        return False
    finally:
        await client.executor.aclose()


if __name__ == "__main__":
    import asyncio

    print("🚀 Sprint Watch - Rally Connection Check")
    print("=" * 50)
    print("Usage: check_rally_connection.py [WORKSPACE_ID [PROJECT_ID]]")

    args = sys.argv[1:]
    success = asyncio.run(
        check_rally_connection(
            args[0] if len(args) > 0 else None,
            args[1] if len(args) > 1 else None,
        )
    )
    sys.exit(0 if success else 1)
