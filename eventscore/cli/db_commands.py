"""
Database CLI Commands

Schema operations: init, drop
"""
import asyncio

from eventscore.database import init_db, drop_db, close_db, DATABASE_URL


class DbCommand:
    """Database CLI command handler."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        """Execute database command."""
        if args.db_action == "init":
            return self._init(args)
        elif args.db_action == "drop":
            return self._drop(args)
        else:
            print("Error: Unknown database action")
            return 1

    def _init(self, args) -> int:
        """Create missing tables."""
        print("=== Database Init ===")
        print(f"Database: {DATABASE_URL}")

        if self.dry_run:
            print("[DRY RUN] Would create all missing tables")
            return 0

        try:
            asyncio.run(self._run(init_db))
            print("✓ Schema ready")
            return 0
        except Exception as e:
            print(f"Error: {e}")
            return 1

    def _drop(self, args) -> int:
        """Drop every table."""
        print("=== Database Drop ===")
        print(f"Database: {DATABASE_URL}")

        if self.dry_run:
            print("[DRY RUN] Would drop all tables")
            return 0

        if not args.force:
            confirm = input("This deletes all certification data. Type 'yes' to continue: ")
            if confirm.strip().lower() != "yes":
                print("Aborted")
                return 1

        try:
            asyncio.run(self._run(drop_db))
            print("✓ All tables dropped")
            return 0
        except Exception as e:
            print(f"Error: {e}")
            return 1

    @staticmethod
    async def _run(operation) -> None:
        try:
            await operation()
        finally:
            await close_db()
