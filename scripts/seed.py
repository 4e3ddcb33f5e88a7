#!/usr/bin/env python3
"""
Seed script: creates the demo rubric "Appel de vente - conformite" with its steps.
Run after migrations: python scripts/seed.py
"""

import asyncio
import json
import os
import sys
from datetime import datetime, timezone
from uuid import uuid4

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from callaudit.config import settings
from callaudit.database import strip_ssl_query

RUBRIC_NAME = "Appel de vente - conformite"

STEPS = [
    {
        "position": 1,
        "name": "Presentation du conseiller",
        "description": "Le conseiller donne son nom et celui du cabinet",
        "weight": 5,
        "is_critical": False,
        "severity": "LOW",
        "requires_product_info": False,
        "control_points": ["Nom du conseiller", "Nom du cabinet"],
        "keywords": ["je m'appelle", "cabinet"],
    },
    {
        "position": 2,
        "name": "Recueil du consentement",
        "description": "Le client accepte l'enregistrement et la poursuite de l'appel",
        "weight": 20,
        "is_critical": True,
        "severity": "CRITICAL",
        "requires_product_info": False,
        "control_points": ["Annonce de l'enregistrement", "Accord explicite du client"],
        "keywords": ["enregistre", "d'accord"],
    },
    {
        "position": 3,
        "name": "Presentation des garanties",
        "description": "Les garanties du produit souscrit sont exposees sans omission",
        "weight": 15,
        "is_critical": False,
        "severity": "HIGH",
        "requires_product_info": True,
        "control_points": ["Gamme citee", "Formule citee", "Exclusions mentionnees"],
        "keywords": ["garantie", "formule"],
    },
    {
        "position": 4,
        "name": "Droit de renonciation",
        "description": "Le delai de renonciation est rappele au client",
        "weight": 10,
        "is_critical": True,
        "severity": "CRITICAL",
        "requires_product_info": False,
        "control_points": ["Delai de 14 jours annonce"],
        "keywords": ["renonciation", "14 jours"],
    },
]


async def seed():
    engine = create_async_engine(strip_ssl_query(settings.database_url))
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as session:
        now = datetime.now(timezone.utc)

        result = await session.execute(
            text("SELECT rubric_id FROM rubrics WHERE name = :name"),
            {"name": RUBRIC_NAME},
        )
        row = result.fetchone()
        if row:
            rubric_id = str(row[0])
            print("Rubric already exists, re-seeding steps.")
        else:
            rubric_id = str(uuid4())
            await session.execute(
                text("""
                    INSERT INTO rubrics (rubric_id, name, description, is_active, created_at)
                    VALUES (:rid, :name, :desc, true, :now)
                """),
                {
                    "rid": rubric_id,
                    "name": RUBRIC_NAME,
                    "desc": "Controle reglementaire des appels de souscription",
                    "now": now,
                },
            )
            await session.commit()

        # Steps are replaced wholesale; audits keep their own rubric snapshot
        await session.execute(
            text("DELETE FROM rubric_steps WHERE rubric_id = :rid"),
            {"rid": rubric_id},
        )
        for step in STEPS:
            await session.execute(
                text("""
                    INSERT INTO rubric_steps (
                        step_pk, rubric_id, position, name, description, weight, is_critical,
                        severity, requires_product_info, control_points, keywords
                    )
                    VALUES (
                        :pk, :rid, :position, :name, :description, :weight, :is_critical,
                        :severity, :requires_product_info, CAST(:control_points AS JSONB),
                        CAST(:keywords AS JSONB)
                    )
                """),
                {
                    **step,
                    "pk": str(uuid4()),
                    "rid": rubric_id,
                    "control_points": json.dumps(step["control_points"]),
                    "keywords": json.dumps(step["keywords"]),
                },
            )
        await session.commit()

    await engine.dispose()
    print(f"Seeded rubric {rubric_id} ({len(STEPS)} steps, total weight {sum(s['weight'] for s in STEPS)}).")
    print(f"Run an audit with rubric_ref={rubric_id}")


if __name__ == "__main__":
    asyncio.run(seed())
