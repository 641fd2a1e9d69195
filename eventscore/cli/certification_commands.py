"""
Certification CLI Commands

certify all / certify status, progress and reset against the configured database
"""
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict

from eventscore.database import AsyncSessionLocal, close_db
from eventscore.errors import APIError
from eventscore.rbac import Actor, Role
from eventscore.services.certification_reset_service import CertificationResetService
from eventscore.services.certification_state_machine import CertificationStateMachine
from eventscore.services.progress_tracker import (
    CertificationProgressTracker, ProgressLevel, ProgressScope
)


def actor_from_args(args) -> Actor:
    return Actor(user_id=args.user, role=Role(args.role), tenant_id=args.tenant, name=args.user)


def run_with_session(operation: Callable[..., Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
    """Run ``operation(db)`` in a fresh session and dispose the engine afterwards."""
    async def runner():
        try:
            async with AsyncSessionLocal() as db:
                return await operation(db)
        finally:
            await close_db()

    return asyncio.run(runner())


class CertifyCommand:
    """Certification CLI command handler."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        """Execute certification command."""
        if args.certify_action == "all":
            return self._certify_all(args)
        elif args.certify_action == "status":
            return self._status(args)
        else:
            print("Error: Unknown certify action")
            return 1

    def _certify_all(self, args) -> int:
        print(f"=== Certify All: Event {args.event} ===")
        actor = actor_from_args(args)

        if self.dry_run:
            print(f"[DRY RUN] Would certify every category of event {args.event} as {actor.role.value}")
            return 0

        try:
            summary = run_with_session(
                lambda db: CertificationStateMachine(db).certify_all(args.event, actor)
            )
        except APIError as e:
            print(f"Error: [{e.code}] {e.message}")
            return 1

        print(f"\n{'Category':<38} {'Result':<10} {'Detail'}")
        print("-" * 70)
        for result in summary["results"]:
            if result["success"]:
                outcome = "skipped" if result["skipped"] else "certified"
                detail = result["status"]
            else:
                outcome = "failed"
                detail = result["error"]
            print(f"{result['category_id']:<38} {outcome:<10} {detail}")

        print(f"\n{summary['succeeded']} of {summary['total']} categories certified")
        return 0 if summary["failed"] == 0 else 2

    def _status(self, args) -> int:
        actor = actor_from_args(args)
        try:
            status = run_with_session(
                lambda db: CertificationStateMachine(db).get_overall_status(args.event, actor)
            )
        except APIError as e:
            print(f"Error: [{e.code}] {e.message}")
            return 1

        if args.json:
            print(json.dumps(status, indent=2, default=str))
            return 0

        print(f"=== Certification Status: {status['name']} ===")
        print(f"Categories certified: {status['categories_certified']}/{status['categories_total']}")
        for contest in status["contests"]:
            mark = "✓" if contest["certified"] else " "
            print(f"\n[{mark}] {contest['name']}")
            for category in contest["categories"]:
                cert = category["certification"]
                state = cert["status"] if cert else "NOT STARTED"
                step = f"step {cert['current_step']}/{cert['total_steps']}" if cert else ""
                print(f"    {category['name'][:40]:<42} {state:<12} {step}")
        return 0


class ProgressCommand:
    """Progress CLI command handler."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        actor = actor_from_args(args)
        scope = ProgressScope(level=ProgressLevel(args.level), id=args.id)
        try:
            progress = run_with_session(
                lambda db: CertificationProgressTracker(db).get_progress(scope, actor)
            )
        except APIError as e:
            print(f"Error: [{e.code}] {e.message}")
            return 1

        print(f"=== Progress: {args.level} {args.id} ===")
        print(json.dumps(progress, indent=2, default=str))
        return 0


class ResetCommand:
    """Reset CLI command handler."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        actor = actor_from_args(args)
        target = args.category or args.contest or args.event or "ALL"
        print(f"=== Certification Reset: {target} ===")

        if self.dry_run:
            print(f"[DRY RUN] Would delete certifications and winner signatures for {target}")
            return 0

        try:
            summary = run_with_session(
                lambda db: CertificationResetService(db).reset(
                    actor,
                    category_id=args.category,
                    contest_id=args.contest,
                    event_id=args.event,
                    reset_all=args.all,
                )
            )
        except APIError as e:
            print(f"Error: [{e.code}] {e.message}")
            return 1

        print(f"Certifications deleted: {summary['certifications_deleted']}")
        print(f"Winner signatures deleted: {summary['winner_signatures_deleted']}")
        return 0
