#!/usr/bin/env python3
"""
Script to add sample users, labs, computers and bookings to the database.
Bookings are placed relative to the current time so the seat map shows every
state right away: one in progress, two upcoming, one completed, one pending.
"""

import datetime

from werkzeug.security import generate_password_hash

SAMPLE_USERS = [
    {
        "college_id": "ADM001",
        "name": "System Administrator",
        "email": "admin@test.com",
        "role": "admin",
        "password": "Admin123!@#"
    },
    {
        "college_id": "TCH001",
        "name": "Prof. John Teacher",
        "email": "teacher@test.com",
        "role": "teacher",
        "password": "Teacher123!@#"
    },
    {
        "college_id": "STU001",
        "name": "Test Student",
        "email": "student@test.com",
        "role": "student",
        "password": "Test123!@#"
    },
    {
        "college_id": "STU002",
        "name": "Second Student",
        "email": "student2@test.com",
        "role": "student",
        "password": "Test123!@#"
    },
]

# Computers listed in `broken` start under maintenance
SAMPLE_LABS = [
    {
        "name": "Computer Lab A",
        "location": "Building A, Room 101",
        "description": "General purpose lab with projector",
        "computers": ["PC-01", "PC-02", "PC-03", "PC-04", "PC-05", "PC-06"],
        "broken": ["PC-05"],
    },
    {
        "name": "Computer Lab B",
        "location": "Building B, Room 204",
        "description": "Programming lab with dual monitors",
        "computers": ["PC-01", "PC-02", "PC-03", "PC-04"],
        "broken": [],
    },
]

# (college_id, lab, computer, start offset, duration, status, purpose)
SAMPLE_BOOKINGS = [
    ("STU001", "Computer Lab A", "PC-01", datetime.timedelta(hours=-1),
     datetime.timedelta(hours=2), "approved", "Programming assignment"),
    ("STU002", "Computer Lab A", "PC-02", datetime.timedelta(hours=2),
     datetime.timedelta(hours=2), "approved", "Database project"),
    ("STU001", "Computer Lab A", "PC-03", datetime.timedelta(days=1),
     datetime.timedelta(hours=3), "approved", "Exam preparation"),
    ("STU001", "Computer Lab A", "PC-01", datetime.timedelta(days=-1),
     datetime.timedelta(hours=2), "approved", "Lab exercise"),
    ("STU002", "Computer Lab A", "PC-04", datetime.timedelta(hours=3),
     datetime.timedelta(hours=2), "pending", "Group study"),
]


def seed_database(conn, now):
    """
    Insert the sample data through ``conn``; existing rows are left alone.
    Returns a dict with the number of rows created per table.
    """
    cursor = conn.cursor()
    created = {"users": 0, "labs": 0, "computers": 0, "bookings": 0}
    base = now.replace(second=0, microsecond=0)

    for user in SAMPLE_USERS:
        cursor.execute("SELECT college_id FROM users WHERE college_id = ?", (user["college_id"],))
        if cursor.fetchone():
            print(f"[SKIP] User '{user['college_id']}' already exists.")
            continue
        cursor.execute(
            "INSERT INTO users (college_id, name, email, password_hash, role) VALUES (?, ?, ?, ?, ?)",
            (user["college_id"], user["name"], user["email"],
             generate_password_hash(user["password"]), user["role"]),
        )
        created["users"] += 1
        print(f"[OK] Created user: {user['college_id']} ({user['role']})")

    computer_ids = {}
    new_labs = set()
    for lab in SAMPLE_LABS:
        cursor.execute("SELECT id FROM labs WHERE name = ?", (lab["name"],))
        existing = cursor.fetchone()
        if existing:
            print(f"[SKIP] Lab '{lab['name']}' already exists. Skipping...")
            continue

        cursor.execute(
            """INSERT INTO labs (name, location, description, capacity, is_active, created_at)
               VALUES (?, ?, ?, ?, 1, ?)""",
            (lab["name"], lab["location"], lab["description"], len(lab["computers"]),
             now.isoformat()),
        )
        lab_id = cursor.lastrowid
        new_labs.add(lab["name"])
        created["labs"] += 1
        print(f"[OK] Created lab: {lab['name']} ({len(lab['computers'])} computers)")

        for name in lab["computers"]:
            cursor.execute(
                """INSERT INTO computers (lab_id, name, specifications, is_working, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (lab_id, name, "Intel i5, 16GB RAM", 0 if name in lab["broken"] else 1,
                 now.isoformat()),
            )
            computer_ids[(lab["name"], name)] = (lab_id, cursor.lastrowid)
            created["computers"] += 1

    for college_id, lab_name, computer, offset, duration, status, purpose in SAMPLE_BOOKINGS:
        # Only book into labs created by this run
        if lab_name not in new_labs:
            continue
        lab_id, computer_id = computer_ids[(lab_name, computer)]
        start = base + offset
        cursor.execute(
            """INSERT INTO bookings
                   (college_id, lab_id, computer_id, start_time, end_time, status, purpose, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (college_id, lab_id, computer_id, start.isoformat(), (start + duration).isoformat(),
             status, purpose, now.isoformat()),
        )
        created["bookings"] += 1

    conn.commit()
    return created


if __name__ == "__main__":
    import app

    print("Starting sample data creation...")
    print("=" * 60)
    app.init_db()
    connection = app.get_db_connection()
    try:
        summary = seed_database(connection, app._utcnow())
    finally:
        connection.close()

    print("\n" + "=" * 60)
    print("SUMMARY")
    print("=" * 60)
    for table, count in summary.items():
        print(f"[OK] {table.capitalize()} created: {count}")
    print("\n[SUCCESS] Sample data is ready to use!")
