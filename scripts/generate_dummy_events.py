"""
Dummy Event Generator
Generates users and scanned answer sheets for local runs, written as
JSON-lines exports or published to the users/answers Kafka topics.
"""

import argparse
import asyncio
import json
import random
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

from faker import Faker

fake = Faker("id_ID")
random.seed(42)
Faker.seed(42)

OUTPUT_DIR = Path(__file__).parent.parent / "data" / "generated"

ROLES = ["user"] * 8 + ["teacher", "headmaster"]
CHOICES = ["A", "B", "C", "D", "E"]
GRADES = ["k7", "k8", "k9"]
SUBJECTS = ["mtk", "ipa", "bin", "big"]


# ==========================================
# USERS
# ==========================================
def generate_users(n, school_ids, days=7):
    print(f"📊 Generating {n:,} users...")

    now = datetime.now(timezone.utc)
    users = []
    for _ in range(n):
        role = random.choice(ROLES)
        users.append({
            "userId": str(uuid.uuid4()),
            "name": fake.name(),
            "email": fake.email(),
            "role": role,
            "schoolId": random.choice(school_ids) if role != "user" or random.random() < 0.5 else None,
            "occurredAt": (now - timedelta(days=random.randint(0, days - 1), minutes=random.randint(0, 1440))).isoformat(),
        })
    return users


# ==========================================
# ANSWER SHEETS
# ==========================================
def generate_answer_key(questions):
    return {str(q): random.choice(CHOICES) for q in range(1, questions + 1)}


def generate_answer_sheets(n, exam_id, school_ids, answer_keys, questions=40):
    print(f"📊 Generating {n:,} answer sheets...")

    sheets = []
    for i in range(n):
        grade_id = random.choice(GRADES)
        subject_id = random.choice(SUBJECTS)
        key = answer_keys[(grade_id, subject_id)]
        skill = random.uniform(0.2, 0.95)

        answers = {}
        for q in range(1, questions + 1):
            roll = random.random()
            if roll < 0.05:
                selected = ""
            elif roll < 0.05 + skill:
                selected = key[str(q)]
            else:
                selected = random.choice(CHOICES)
            answers[str(q)] = {"selected": selected, "isCorrect": selected != "" and selected == key[str(q)]}

        sheets.append({
            "examId": exam_id,
            "answerId": str(uuid.uuid4()),
            "schoolId": random.choice(school_ids),
            "gradeId": grade_id,
            "subjectId": subject_id,
            "studentNo": f"{i:06d}",
            "studentName": fake.name(),
            "studentAnswers": answers,
        })
    return sheets


def write_jsonl(path, rows):
    with open(path, "w", encoding="utf-8") as f:
        for row in rows:
            f.write(json.dumps(row) + "\n")
    print(f"   ✅ {path.name}: {len(rows):,} lines")


async def publish(users, sheets):
    """Publish to the configured Kafka topics"""
    from aiokafka import AIOKafkaProducer

    from ljk_analytics.config import get_settings

    kafka = get_settings().kafka
    producer = AIOKafkaProducer(
        bootstrap_servers=kafka.bootstrap_servers,
        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        key_serializer=lambda k: k.encode("utf-8"),
    )
    await producer.start()
    try:
        for user in users:
            await producer.send(kafka.topics_users, value=user, key=user["userId"])
        for sheet in sheets:
            await producer.send(kafka.topics_answers, value=sheet, key=sheet["answerId"])
        await producer.flush()
    finally:
        await producer.stop()
    print(f"   ✅ Published {len(users):,} users and {len(sheets):,} answer sheets")


# ==========================================
# MAIN
# ==========================================
def main():
    parser = argparse.ArgumentParser(description="Generate dummy LJK events")
    parser.add_argument("--users", type=int, default=500)
    parser.add_argument("--sheets", type=int, default=2000)
    parser.add_argument("--schools", type=int, default=5)
    parser.add_argument("--questions", type=int, default=40)
    parser.add_argument("--exam-id", default="uts-2025")
    parser.add_argument("--publish", action="store_true", help="Send to Kafka instead of writing files")
    args = parser.parse_args()

    print("=" * 60)
    print("📝 LJK Dummy Event Generator")
    print("=" * 60 + "\n")

    school_ids = [f"sch-{i:03d}" for i in range(1, args.schools + 1)]
    answer_keys = {
        (grade, subject): generate_answer_key(args.questions)
        for grade in GRADES
        for subject in SUBJECTS
    }

    users = generate_users(args.users, school_ids)
    sheets = generate_answer_sheets(args.sheets, args.exam_id, school_ids, answer_keys, args.questions)

    if args.publish:
        asyncio.run(publish(users, sheets))
        return

    OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    write_jsonl(OUTPUT_DIR / "users.jsonl", users)
    write_jsonl(OUTPUT_DIR / f"answers-{args.exam_id}.jsonl", sheets)
    (OUTPUT_DIR / f"answer-keys-{args.exam_id}.json").write_text(
        json.dumps({f"{g}_{s}": k for (g, s), k in answer_keys.items()}, indent=2),
        encoding="utf-8",
    )

    print(f"\n📁 Output: {OUTPUT_DIR}\n")


if __name__ == "__main__":
    main()
