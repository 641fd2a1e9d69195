#!/usr/bin/env python3
"""
Demo Event Seeder

Generates a deterministic event with contests, categories, contestants,
judges and uncertified scores so the certification chain can be walked
end to end.
Usage: python scripts/seed_demo_event.py --tenant demo --contests 2 --categories 3
"""
import argparse
import asyncio
import hashlib
import json
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Dict, List
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession


def deterministic_uuid(seed: str) -> str:
    """Generate deterministic UUID string from seed string."""
    hash_bytes = hashlib.md5(seed.encode()).digest()
    return str(UUID(bytes=hash_bytes[:16], version=4))


@dataclass
class SeedConfig:
    tenant_id: str = "demo"
    contests: int = 2
    categories_per_contest: int = 3
    contestants: int = 8
    judges: int = 3
    max_score: int = 100


class DemoEventSeeder:
    """Seeds one event and every score its judges would enter."""

    def __init__(self, db: AsyncSession, config: SeedConfig):
        self.db = db
        self.config = config
        self.created_ids: Dict[str, List[str]] = {
            'events': [],
            'contests': [],
            'categories': [],
            'contestants': [],
            'judges': [],
            'scores': [],
        }

    def _id(self, name: str) -> str:
        return deterministic_uuid(f"{self.config.tenant_id}_{name}")

    async def seed_all(self) -> Dict[str, List[str]]:
        print("=== Demo Event Seeder ===")
        print(f"Config: {self.config}")
        print("")

        from eventscore.orm.competition import Event

        event_id = self._id("event")
        self.db.add(Event(
            id=event_id,
            tenant_id=self.config.tenant_id,
            name="Demo Championship",
            description="Seeded event for certification walkthroughs",
        ))
        self.created_ids['events'].append(event_id)
        await self.db.flush()

        await self._seed_contests(event_id)
        await self._seed_people(event_id)
        await self._seed_scores()

        await self.db.commit()
        print("\n=== Seeding Complete ===")
        self._print_summary()
        return self.created_ids

    async def _seed_contests(self, event_id: str):
        print(f"Seeding {self.config.contests} contests...")
        from eventscore.orm.competition import Contest, Category

        for i in range(self.config.contests):
            contest_id = self._id(f"contest_{i}")
            self.db.add(Contest(
                id=contest_id,
                tenant_id=self.config.tenant_id,
                event_id=event_id,
                name=f"Contest {i + 1}",
            ))
            self.created_ids['contests'].append(contest_id)

            for j in range(self.config.categories_per_contest):
                category_id = self._id(f"contest_{i}_category_{j}")
                self.db.add(Category(
                    id=category_id,
                    tenant_id=self.config.tenant_id,
                    contest_id=contest_id,
                    name=f"Contest {i + 1} / Category {j + 1}",
                    max_score=Decimal(self.config.max_score),
                ))
                self.created_ids['categories'].append(category_id)

        await self.db.flush()
        print(f"  ✓ Created {len(self.created_ids['categories'])} categories")

    async def _seed_people(self, event_id: str):
        print(f"Seeding {self.config.contestants} contestants and {self.config.judges} judges...")
        from eventscore.orm.competition import Contestant, Judge

        for i in range(self.config.contestants):
            contestant_id = self._id(f"contestant_{i}")
            self.db.add(Contestant(
                id=contestant_id,
                tenant_id=self.config.tenant_id,
                event_id=event_id,
                name=f"Contestant {i + 1}",
                contestant_number=i + 1,
            ))
            self.created_ids['contestants'].append(contestant_id)

        for i in range(self.config.judges):
            judge_id = self._id(f"judge_{i}")
            self.db.add(Judge(
                id=judge_id,
                tenant_id=self.config.tenant_id,
                event_id=event_id,
                user_id=f"judge-user-{i + 1}",
                name=f"Judge {i + 1}",
                is_head_judge=(i == 0),
            ))
            self.created_ids['judges'].append(judge_id)

        await self.db.flush()
        print("  ✓ Created contestants and judges (judge 1 is head judge)")

    async def _seed_scores(self):
        print("Seeding scores...")
        from eventscore.orm.score import Score

        for category_id in self.created_ids['categories']:
            for judge_id in self.created_ids['judges']:
                for contestant_id in self.created_ids['contestants']:
                    # Deterministic spread between 50% and 99% of max
                    digest = hashlib.md5(f"{category_id}{judge_id}{contestant_id}".encode()).digest()
                    fraction = Decimal(50 + digest[0] % 50) / Decimal(100)
                    score_id = deterministic_uuid(f"{category_id}_{judge_id}_{contestant_id}")
                    self.db.add(Score(
                        id=score_id,
                        tenant_id=self.config.tenant_id,
                        category_id=category_id,
                        judge_id=judge_id,
                        contestant_id=contestant_id,
                        score=(Decimal(self.config.max_score) * fraction).quantize(Decimal("0.01")),
                    ))
                    self.created_ids['scores'].append(score_id)

        await self.db.flush()
        print(f"  ✓ Created {len(self.created_ids['scores'])} scores")

    def _print_summary(self):
        print("\nSummary:")
        for entity, ids in self.created_ids.items():
            print(f"  {entity}: {len(ids)}")

    async def export_seed_data(self, output_path: str):
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({
            "tenant_id": self.config.tenant_id,
            "ids": self.created_ids,
        }, indent=2))
        print(f"\n✓ Seed data exported to {output_path}")


async def main():
    parser = argparse.ArgumentParser(description='Seed a demo event')
    parser.add_argument('--tenant', '-t', default='demo', help='Tenant ID (default: demo)')
    parser.add_argument('--contests', type=int, default=2, help='Number of contests (default: 2)')
    parser.add_argument('--categories', type=int, default=3, help='Categories per contest (default: 3)')
    parser.add_argument('--contestants', type=int, default=8, help='Number of contestants (default: 8)')
    parser.add_argument('--judges', '-j', type=int, default=3, help='Number of judges (default: 3)')
    parser.add_argument(
        '--output', '-o',
        default='./artifacts/seed_data.json',
        help='Output path for seed data JSON'
    )

    args = parser.parse_args()

    config = SeedConfig(
        tenant_id=args.tenant,
        contests=args.contests,
        categories_per_contest=args.categories,
        contestants=args.contestants,
        judges=args.judges,
    )

    from eventscore.database import AsyncSessionLocal, init_db, close_db

    await init_db()
    try:
        async with AsyncSessionLocal() as db:
            seeder = DemoEventSeeder(db, config)
            await seeder.seed_all()
            await seeder.export_seed_data(args.output)
    finally:
        await close_db()

    print("\n✓ Seeding complete!")


if __name__ == "__main__":
    asyncio.run(main())
