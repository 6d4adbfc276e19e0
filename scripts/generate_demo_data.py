#!/usr/bin/env python3
"""Generate synthetic coverage settlement demo data.

Creates:
- data/raw/insurers.csv
- data/raw/plans.csv
- data/raw/agreements.csv
- data/raw/provided_services.csv
- data/raw/service_analyses.csv
"""

from __future__ import annotations

import argparse
import csv
import random
from datetime import date, timedelta
from pathlib import Path
from typing import Iterable


INSURERS = [
    (1, "Obra Social Provincial", "OSP"),
    (2, "Mutual Norte", "MN"),
    (3, "Prepaga Centro", "PC"),
    # Every plan inactive: previews for this insurer are refused.
    (4, "Cobertura Suspendida", "CS"),
]
PLAN_NAMES = ["Basico", "Integral", "Plus", "Joven"]
ORIGINS = ["Ambulatorio", "Internacion", "Guardia", "Domicilio"]
PROTOCOL_STATUSES = ["COMPLETED", "COMPLETED", "COMPLETED", "VALIDATED", "DELIVERED"]
ANALYSES = [
    (101, "Hemograma completo"),
    (102, "Glucemia"),
    (103, "Uremia"),
    (104, "Colesterol total"),
    (105, "Hepatograma"),
    (106, "TSH"),
    (107, "Orina completa"),
    (108, "Eritrosedimentacion"),
]
FIRST_NAMES = [
    "Juan", "Maria", "Lucia", "Martin", "Sofia",
    "Diego", "Valentina", "Pablo", "Camila", "Tomas",
]
LAST_NAMES = [
    "Gomez", "Fernandez", "Lopez", "Diaz", "Martinez",
    "Perez", "Romero", "Sosa", "Torres", "Alvarez",
]


def iso(d: date) -> str:
    return d.isoformat()


def write_csv(path: Path, rows: Iterable[dict], fieldnames: list[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def generate(args: argparse.Namespace) -> None:
    rng = random.Random(args.seed)
    period_start = date.today().replace(day=1) - timedelta(days=90)

    insurer_rows: list[dict] = []
    plan_rows: list[dict] = []
    agreement_rows: list[dict] = []
    service_rows: list[dict] = []
    analysis_rows: list[dict] = []

    plan_id = 0
    agreement_id = 0
    service_id = 0
    for insurer_id, name, acronym in INSURERS:
        insurer_rows.append({"insurer_id": insurer_id, "name": name, "acronym": acronym})
        suspended = acronym == "CS"
        for plan_name in rng.sample(PLAN_NAMES, k=rng.randint(2, 3)):
            plan_id += 1
            plan_rows.append(
                {
                    "plan_id": plan_id,
                    "insurer_id": insurer_id,
                    "name": f"{acronym} {plan_name}",
                    "is_active": "false" if suspended or rng.random() < 0.15 else "true",
                }
            )
            # An older agreement (NBU 2012-2016) and the current one (NBU 2016-2024).
            boundary = period_start + timedelta(days=rng.randint(20, 60))
            for version, valid_from, valid_to in (
                (1, period_start - timedelta(days=365), boundary - timedelta(days=1)),
                (2, boundary, None),
            ):
                agreement_id += 1
                agreement_rows.append(
                    {
                        "agreement_id": agreement_id,
                        "plan_id": plan_id,
                        "version_nbu": version,
                        "ub_value": f"{rng.uniform(8, 25):.2f}",
                        "valid_from": iso(valid_from),
                        "valid_to": iso(valid_to) if valid_to else "",
                        "coverage_percentage": rng.choice(["100", "90", "80"]),
                        "requires_copayment": "true" if rng.random() < 0.4 else "false",
                    }
                )
                window_end = valid_to or period_start + timedelta(days=120)
                window_start = max(valid_from, period_start)
                span = max((window_end - window_start).days, 1)
                for _ in range(rng.randint(args.min_services, args.max_services)):
                    service_id += 1
                    service_rows.append(
                        {
                            "service_id": service_id,
                            "agreement_id": agreement_id,
                            "service_date": iso(window_start + timedelta(days=rng.randint(0, span))),
                            "first_name": rng.choice(FIRST_NAMES),
                            "last_name": rng.choice(LAST_NAMES),
                            "dni": str(rng.randint(20_000_000, 45_000_000)),
                            "origin": rng.choice(ORIGINS),
                            "status": rng.choice(PROTOCOL_STATUSES),
                            "copayment_amount": f"{rng.choice([0, 0, 0, 150, 300]):.2f}",
                            "authorization_number": f"AUT-{rng.randint(10000, 99999)}" if rng.random() < 0.5 else "",
                        }
                    )
                    for analysis_id, analysis_name in rng.sample(ANALYSES, k=rng.randint(1, 5)):
                        analysis_rows.append(
                            {
                                "service_id": service_id,
                                "analysis_id": analysis_id,
                                "analysis_name": analysis_name,
                                "covered_amount": f"{rng.uniform(400, 4500):.2f}",
                            }
                        )

    raw = args.output / "raw"
    write_csv(raw / "insurers.csv", insurer_rows, ["insurer_id", "name", "acronym"])
    write_csv(raw / "plans.csv", plan_rows, ["plan_id", "insurer_id", "name", "is_active"])
    write_csv(
        raw / "agreements.csv",
        agreement_rows,
        [
            "agreement_id",
            "plan_id",
            "version_nbu",
            "ub_value",
            "valid_from",
            "valid_to",
            "coverage_percentage",
            "requires_copayment",
        ],
    )
    write_csv(
        raw / "provided_services.csv",
        service_rows,
        [
            "service_id",
            "agreement_id",
            "service_date",
            "first_name",
            "last_name",
            "dni",
            "origin",
            "status",
            "copayment_amount",
            "authorization_number",
        ],
    )
    write_csv(
        raw / "service_analyses.csv",
        analysis_rows,
        ["service_id", "analysis_id", "analysis_name", "covered_amount"],
    )


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Generate synthetic settlement demo data.")
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--min-services", type=int, default=4, help="provided services per agreement, lower bound")
    p.add_argument("--max-services", type=int, default=45, help="provided services per agreement, upper bound")
    p.add_argument("--output", type=Path, default=Path("data"))
    return p.parse_args()


if __name__ == "__main__":
    generate(parse_args())
