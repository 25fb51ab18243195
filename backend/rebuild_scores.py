"""
Maintenance script: recompute every student's score from scoring_system_history.

By default each student's expected score is the sum of the `delta` stored on
their history records, the points that were actually applied. With
--recompute the deltas are derived again from the statuses using the stored
scoring conditions (or the defaults), replaying each (studentId, type, lesson)
sequence in seq order.

Records still marked pending belong to a write that failed half way. They are
left out of the totals and reported; --fix deletes them so the event can be
applied again.

Students whose stored score differs from the total are reported; pass --fix
to overwrite them. Run while the portal is idle.

Run from the backend folder (with .env present):
  python rebuild_scores.py [--fix] [--recompute]

Requires: MONGO_URL (and optionally DB_NAME) in backend/.env
"""
import argparse
from collections import defaultdict

from pymongo import ASCENDING, MongoClient

from scoring import DEFAULT_RULES, ScoringRules
from scoring.config import get_db_name, get_mongo_url, load_env
from scoring.store import CONDITIONS_COLLECTION, HISTORY_COLLECTION, PENDING_FIELD

load_env()


def replay_totals(history, rules=None):
    """Sum of deltas per student; stored deltas unless `rules` is given."""
    totals = defaultdict(float)
    for record in history:
        if record.get(PENDING_FIELD):
            continue
        if rules is None:
            delta = record.get("delta") or 0.0
        else:
            delta = rules.delta(record["type"], record.get("previousStatus"), record["status"])
        totals[record["studentId"]] += delta
    return totals


def main():
    parser = argparse.ArgumentParser(description="Recompute student scores from the scoring history.")
    parser.add_argument("--fix", action="store_true", help="write the totals back to students.score")
    parser.add_argument(
        "--recompute",
        action="store_true",
        help="derive deltas from the current scoring conditions instead of the stored deltas",
    )
    args = parser.parse_args()

    try:
        mongo_url = get_mongo_url()
    except ValueError as e:
        print(f"ERROR: {e}")
        raise SystemExit(1)

    client = MongoClient(mongo_url, serverSelectionTimeoutMS=10000)
    db = client[get_db_name()]

    rules = None
    if args.recompute:
        conditions = list(db[CONDITIONS_COLLECTION].find({}, {"_id": 0}))
        rules = ScoringRules.from_conditions(conditions) if conditions else DEFAULT_RULES
        print(f"Recomputing deltas with {'stored' if conditions else 'default'} scoring conditions.")
    else:
        print("Summing the deltas stored on the history records.")

    pending = list(db[HISTORY_COLLECTION].find({PENDING_FIELD: True}, {"_id": 0}))
    for record in pending:
        print(
            f"  Pending record: student {record['studentId']}, {record['type']} "
            f"'{record['lesson']}' -> {record['status']} (seq {record.get('seq')})"
        )
    if pending and args.fix:
        removed = db[HISTORY_COLLECTION].delete_many({PENDING_FIELD: True})
        print(f"Removed {removed.deleted_count} pending record(s).")

    history = db[HISTORY_COLLECTION].find({}, {"_id": 0}).sort(
        [("studentId", ASCENDING), ("type", ASCENDING), ("lesson", ASCENDING), ("seq", ASCENDING)]
    )
    totals = replay_totals(history, rules)
    print(f"Replayed history for {len(totals)} student(s).")

    mismatches = 0
    for student in db.students.find({"id": {"$exists": True}}, {"_id": 0, "id": 1, "name": 1, "score": 1}):
        expected = totals.get(student["id"], 0.0)
        stored = student.get("score") or 0
        if stored == expected:
            continue
        mismatches += 1
        print(f"  Student {student['id']} ({student.get('name', '')}): stored {stored}, replayed {expected}")
        if args.fix:
            db.students.update_one({"id": student["id"]}, {"$set": {"score": expected}})

    if not mismatches:
        print("All scores match the history.")
    elif args.fix:
        print(f"\nFixed {mismatches} score(s).")
    else:
        print(f"\n{mismatches} score(s) differ. Run with --fix to correct them.")

    client.close()
    print("\nDone.")


if __name__ == "__main__":
    main()
