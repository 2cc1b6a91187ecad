import sqlite3
import traceback
from functools import wraps

from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.security import generate_password_hash, check_password_hash
import re
import os
import jwt
import datetime
from datetime import timezone

from booking_utils import (
    Booking,
    EffectiveStatus,
    LIVE_STATUSES,
    PersistedStatus,
    ResourceScope,
    booking_to_dict,
    can_cancel_booking,
    find_conflicts,
    format_timestamp,
    is_upcoming,
    parse_timestamp,
)
from seat_booking_utils import Computer, compute_occupancy, find_available_computers

# --- Configuration ---
app = Flask(__name__)
# Browser frontends call the JSON API from another origin
CORS(app, resources={r"/api/*": {"origins": "*"}})
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATABASE = os.getenv("DATABASE_PATH", os.path.join(BASE_DIR, "lab_reservations.db"))
# Only print in non-testing environments to avoid CI noise
if not os.getenv("PYTEST_CURRENT_TEST"):
    print("Using database file:", DATABASE)
# Secret used for signing JWTs. In production, set via environment variable.
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
JWT_EXP_DELTA_SECONDS = int(os.getenv("JWT_EXP_DELTA_SECONDS", 3600))
# Booking rules
MAX_BOOKING_HOURS = float(os.getenv("MAX_BOOKING_HOURS", 168))
MAX_ACTIVE_BOOKINGS = int(os.getenv("MAX_ACTIVE_BOOKINGS", 5))
RESERVED_LOOKAHEAD_HOURS = float(os.getenv("RESERVED_LOOKAHEAD_HOURS", 4))

VALID_ROLES = ["student", "teacher", "admin"]
STAFF_ROLES = ("admin", "teacher")


def _utcnow():
    """Current instant. Read once per request and passed down."""
    return datetime.datetime.now(timezone.utc)


# --- Database Setup ---


def get_db_connection():
    """Connects to the SQLite database."""
    conn = sqlite3.connect(DATABASE)
    conn.row_factory = sqlite3.Row  # This allows accessing columns by name
    return conn


def init_db():
    """Initializes the database schema if it doesn't exist."""
    if not os.getenv("PYTEST_CURRENT_TEST"):
        print("Initializing database...")
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            college_id TEXT PRIMARY KEY NOT NULL,
            name TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            role TEXT NOT NULL
        );
        """
    )
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS labs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL,
            location TEXT NOT NULL,
            description TEXT,
            capacity INTEGER NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT
        );
        """
    )
    # A computer belongs to exactly one lab; names are unique inside a lab
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS computers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            lab_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            specifications TEXT,
            is_working INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT,
            FOREIGN KEY (lab_id) REFERENCES labs(id) ON DELETE CASCADE,
            UNIQUE(lab_id, name)
        );
        """
    )
    # start_time/end_time are ISO-8601 UTC; computer_id NULL means any computer in the lab.
    # status only ever holds pending/approved/rejected/cancelled.
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS bookings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            college_id TEXT NOT NULL,
            lab_id INTEGER NOT NULL,
            computer_id INTEGER,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            purpose TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT,
            FOREIGN KEY (college_id) REFERENCES users(college_id),
            FOREIGN KEY (lab_id) REFERENCES labs(id),
            FOREIGN KEY (computer_id) REFERENCES computers(id)
        );
        """
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_bookings_lab_status ON bookings (lab_id, status)"
    )
    conn.commit()

    # Close the connection unless it's an in-memory database. Tests
    # supply an in-memory connection via monkeypatching
    # `get_db_connection()`; PRAGMA database_list reports an empty
    # file name for it.
    try:
        db_list = conn.execute("PRAGMA database_list").fetchall()
        main_db_file = db_list[0][2] if db_list and len(db_list[0]) > 2 else None
    except sqlite3.Error:
        main_db_file = None

    if main_db_file and main_db_file != ":memory:":
        conn.close()

    if not os.getenv("PYTEST_CURRENT_TEST"):
        print("Database initialization complete.")


def _close(conn):
    # Only close the connection if it's not an in-memory database (testing uses :memory:)
    if DATABASE != ":memory:":
        conn.close()


# --- Row Mapping ---

BOOKING_SELECT = (
    """
    SELECT b.id, b.college_id, b.lab_id, b.computer_id, b.start_time, b.end_time,
           b.status, b.purpose, b.created_at, b.updated_at,
           u.name AS user_name, u.email AS user_email,
           l.name AS lab_name, c.name AS computer_name
    FROM bookings b
    LEFT JOIN users u ON b.college_id = u.college_id
    LEFT JOIN labs l ON b.lab_id = l.id
    LEFT JOIN computers c ON b.computer_id = c.id
    """
)


def booking_from_row(row):
    """Build a Booking from a bookings row (joined with users for the name)."""
    keys = row.keys()
    return Booking(
        id=row["id"],
        user_id=row["college_id"],
        lab_id=row["lab_id"],
        computer_id=row["computer_id"],
        start_time=parse_timestamp(row["start_time"]),
        end_time=parse_timestamp(row["end_time"]),
        status=PersistedStatus(row["status"]),
        user_name=(row["user_name"] if "user_name" in keys else None) or "",
        purpose=row["purpose"],
    )


def computer_from_row(row):
    return Computer(
        id=row["id"],
        name=row["name"],
        lab_id=row["lab_id"],
        is_working=bool(row["is_working"]),
        specifications=row["specifications"],
    )


def lab_to_dict(row):
    return {
        "id": row["id"],
        "name": row["name"],
        "location": row["location"],
        "description": row["description"],
        "capacity": row["capacity"],
        "is_active": bool(row["is_active"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def serialize_booking(row, now):
    """Booking row as JSON, with status resolved at ``now``."""
    data = booking_to_dict(booking_from_row(row), now)
    data["email"] = row["user_email"]
    data["lab_name"] = row["lab_name"]
    data["computer_name"] = row["computer_name"]
    data["created_at"] = row["created_at"]
    data["updated_at"] = row["updated_at"]
    return data


def fetch_bookings(cursor, where="", params=()):
    """Run BOOKING_SELECT with an optional WHERE clause and return the rows."""
    cursor.execute(f"{BOOKING_SELECT} {where}", params)
    return cursor.fetchall()


def fetch_lab_computers(cursor, lab_id):
    cursor.execute(
        "SELECT id, lab_id, name, specifications, is_working FROM computers "
        "WHERE lab_id = ? ORDER BY name ASC",
        (lab_id,),
    )
    return [computer_from_row(row) for row in cursor.fetchall()]


def fetch_live_lab_bookings(cursor, lab_id):
    """Pending and approved bookings of a lab, the only ones that can hold a seat."""
    rows = fetch_bookings(
        cursor,
        "WHERE b.lab_id = ? AND b.status IN ('pending', 'approved') ORDER BY b.start_time ASC",
        (lab_id,),
    )
    return [booking_from_row(row) for row in rows]


# --- Helper Functions (Core Logic) ---

def validate_registration_data(data):
    """
    Validates registration data:
    1. Required fields present (role defaults to student).
    2. Email format validation.
    3. Password complexity (min 8 chars, 1 number, 1 symbol).
    4. Role validation (student, teacher, admin).
    Duplicate email/college ID is handled by database constraints.
    """
    errors = []

    if not all(key in data and data[key] for key in ["college_id", "name", "email", "password"]):
        errors.append("All fields (College ID, Name, Email, Password) are required.")
        return False, errors

    role = data.get("role") or "student"
    if role not in VALID_ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(VALID_ROLES)}.")

    if not re.match(EMAIL_REGEX, data["email"]):
        errors.append("Invalid email format.")

    errors.extend(_password_errors(data["password"]))

    return not errors, errors


EMAIL_REGEX = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"


def _password_errors(password):
    errors = []
    if len(password) < 8:
        errors.append("Password must be at least 8 characters long.")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number.")
    if not re.search(r'[!@#$%^&*(),.?":{}|<>]', password):
        errors.append("Password must contain at least one symbol (!@#$%^&*...).")
    return errors


def validate_user_update(data):
    """
    Validates an admin edit of a user account:
    name, email and role are required; password is optional and,
    when given, must meet the registration rules.
    """
    errors = []

    if not all(isinstance(data.get(key), str) and data[key].strip() for key in ("name", "email", "role")):
        errors.append("All fields (Name, Email, Role) are required.")
        return False, errors

    if data["role"] not in VALID_ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(VALID_ROLES)}.")

    if not re.match(EMAIL_REGEX, data["email"].strip()):
        errors.append("Invalid email format.")

    password = data.get("password")
    if password not in (None, ""):
        if not isinstance(password, str):
            errors.append("Password must be a string.")
        else:
            errors.extend(_password_errors(password))

    return not errors, errors


def register_user(data):
    """
    Attempts to register a new user after validation.
    Returns (success: bool, message: str)
    """
    is_valid, errors = validate_registration_data(data)
    if not is_valid:
        return False, "Validation failed: " + ", ".join(errors)

    hashed_password = generate_password_hash(data["password"])

    conn = get_db_connection()
    try:
        conn.execute(
            "INSERT INTO users "
            "(college_id, name, email, password_hash, role) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                data["college_id"],
                data["name"],
                data["email"],
                hashed_password,
                data.get("role") or "student",
            ),
        )
        conn.commit()
        return True, "Success: User registration complete. Redirecting to login page."
    except sqlite3.IntegrityError as e:
        conn.rollback()
        if "UNIQUE constraint failed: users.email" in str(e):
            return False, "Duplicate email validation error: This email is already registered."
        elif "UNIQUE constraint failed: users.college_id" in str(e):
            return (
                False,
                "Duplicate college ID validation error: This college ID is already registered.",
            )
        else:
            print(f"Database Error: {e}")
            return False, "A database error occurred during registration."
    finally:
        _close(conn)


def validate_lab_data(data, partial=False):
    """
    Validates lab data for creation/update.
    Required fields on creation: name, location, capacity.
    """
    errors = []

    if not partial:
        for key in ("name", "location", "capacity"):
            if data.get(key) in (None, ""):
                errors.append("All fields (name, location, capacity) are required.")
                return False, errors

    if "name" in data:
        if not isinstance(data["name"], str) or len(data["name"].strip()) == 0:
            errors.append("Lab name must be a non-empty string.")
        elif len(data["name"].strip()) > 100:
            errors.append("Lab name must be less than 100 characters.")

    if "location" in data:
        if not isinstance(data["location"], str) or len(data["location"].strip()) == 0:
            errors.append("Location must be a non-empty string.")

    if "capacity" in data:
        try:
            capacity = int(data["capacity"])
            if capacity <= 0:
                errors.append("Capacity must be a positive integer.")
            elif capacity > 1000:
                errors.append("Capacity must be less than or equal to 1000.")
        except (ValueError, TypeError):
            errors.append("Capacity must be a valid positive integer.")

    if "is_active" in data and not isinstance(data["is_active"], bool):
        errors.append("is_active must be true or false.")

    return not errors, errors


def validate_booking_request(data, now):
    """
    Checks a booking request before it reaches the conflict check.
    Returns (is_valid, error_code, message, fields). ``fields`` holds the parsed
    lab_id, computer_id, start_time, end_time and purpose when valid.
    """
    if not all(data.get(key) not in (None, "") for key in ("lab_id", "start_time", "end_time")):
        return False, "MISSING_FIELDS", "lab_id, start_time and end_time are required.", None

    try:
        lab_id = int(data["lab_id"])
        computer_id = data.get("computer_id")
        computer_id = int(computer_id) if computer_id not in (None, "") else None
    except (ValueError, TypeError):
        return False, "INVALID_RESOURCE", "lab_id and computer_id must be integers.", None

    try:
        start_time = parse_timestamp(data["start_time"])
        end_time = parse_timestamp(data["end_time"])
    except (ValueError, TypeError):
        return False, "INVALID_TIMESTAMP", "Invalid start or end time. Use ISO-8601.", None

    if end_time <= start_time:
        return False, "INVALID_INTERVAL", "End time must be after start time.", None

    if start_time < now:
        return False, "PAST_START", "Cannot book in the past.", None

    if end_time - start_time > datetime.timedelta(hours=MAX_BOOKING_HOURS):
        return (
            False,
            "DURATION_EXCEEDED",
            f"Bookings cannot be longer than {MAX_BOOKING_HOURS:g} hours.",
            None,
        )

    purpose = data.get("purpose")
    purpose = (purpose.strip() or None) if isinstance(purpose, str) else None

    fields = {
        "lab_id": lab_id,
        "computer_id": computer_id,
        "start_time": start_time,
        "end_time": end_time,
        "purpose": purpose,
    }
    return True, None, None, fields


def _generate_token(payload: dict) -> str:
    """Return a JWT for the given payload (adds expiry)."""
    payload_copy = payload.copy()
    expiry = datetime.datetime.now(timezone.utc) + datetime.timedelta(
        seconds=JWT_EXP_DELTA_SECONDS
    )
    payload_copy["exp"] = expiry
    token = jwt.encode(payload_copy, SECRET_KEY, algorithm="HS256")
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token


def verify_token():
    """Extract and verify JWT token from Authorization header."""
    auth = request.headers.get("Authorization", None)
    if not auth or not auth.startswith("Bearer "):
        return None, jsonify({"message": "Missing or invalid Authorization header."}), 401

    token = auth.split(" ", 1)[1]
    try:
        data = jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
        return data, None, None
    except jwt.ExpiredSignatureError:
        return None, jsonify({"message": "Token expired."}), 401
    except jwt.InvalidTokenError:
        return None, jsonify({"message": "Invalid token."}), 401


def require_auth(f):
    """Decorator to require authentication for an endpoint."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token_data, error_response, status_code = verify_token()
        if error_response:
            return error_response, status_code
        request.current_user = token_data
        return f(*args, **kwargs)
    return decorated_function


def require_role(*allowed_roles):
    """Decorator to require specific role(s) for an endpoint."""
    def decorator(f):
        @wraps(f)
        @require_auth
        def decorated_function(*args, **kwargs):
            user_role = request.current_user.get("role")
            if user_role not in allowed_roles:
                return jsonify({"message": "Insufficient permissions."}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def booking_error(code, message, status_code):
    return jsonify({"message": message, "error": code, "success": False}), status_code


# --- Auth Endpoints ---

@app.route("/api/register", methods=["POST"])
def handle_registration():
    """API endpoint to process user registration."""
    # silent=True so invalid JSON gets a JSON answer instead of an HTML error page
    data = request.get_json(silent=True)
    if data is None:
        return jsonify({"message": "Invalid JSON payload."}), 400

    success, message = register_user(data)

    if success:
        return jsonify({"message": message, "success": True}), 201
    else:
        return jsonify({"message": message, "success": False}), 400


@app.route("/api/login", methods=["POST"])
def handle_login():
    """Authenticate user and return JWT token on success."""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"message": "Invalid JSON payload.", "success": False}), 400

    if "college_id" not in data or "password" not in data:
        return jsonify({"message": "College ID and password required.", "success": False}), 400

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT college_id, password_hash, name, role FROM users WHERE college_id = ?",
            (data["college_id"],),
        )
        row = cursor.fetchone()

        # Do not leak whether the user exists
        if row is None or not check_password_hash(row["password_hash"], data["password"]):
            return jsonify({"message": "Invalid credentials.", "success": False}), 401

        payload = {"college_id": row["college_id"], "role": row["role"], "name": row["name"]}
        token = _generate_token(payload)

        return jsonify({
            "token": token,
            "success": True,
            "role": row["role"],
            "name": row["name"]
        }), 200
    except sqlite3.Error as e:
        print(f"Database Error in handle_login: {e}")
        traceback.print_exc()
        return jsonify({"message": "An error occurred during login.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/me", methods=["GET"])
@require_auth
def handle_me():
    """Return user info based on Bearer token."""
    user = request.current_user
    return jsonify({
        "college_id": user.get("college_id"),
        "role": user.get("role"),
        "name": user.get("name")
    }), 200


# --- Lab Management Endpoints ---

@app.route("/api/labs", methods=["POST"])
@require_role("admin")
def create_lab():
    """Create a new lab (admin only)."""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"message": "Invalid JSON payload.", "success": False}), 400

    is_valid, errors = validate_lab_data(data)
    if not is_valid:
        return jsonify({"message": "Validation failed: " + ", ".join(errors), "success": False}), 400

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        created_at = _utcnow().isoformat()
        cursor.execute(
            """
            INSERT INTO labs (name, location, description, capacity, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                data["name"].strip(),
                data["location"].strip(),
                data.get("description"),
                int(data["capacity"]),
                1 if data.get("is_active", True) else 0,
                created_at,
            ),
        )
        conn.commit()
        lab_id = cursor.lastrowid

        cursor.execute("SELECT * FROM labs WHERE id = ?", (lab_id,))
        return jsonify({
            "message": "Lab created successfully.",
            "lab": lab_to_dict(cursor.fetchone()),
            "success": True
        }), 201
    except sqlite3.IntegrityError as e:
        conn.rollback()
        if "UNIQUE constraint failed: labs.name" in str(e):
            return jsonify({"message": "A lab with this name already exists.", "success": False}), 400
        print(f"Integrity Error in create_lab: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to create lab.", "success": False}), 500
    except sqlite3.Error as e:
        print(f"Database Error in create_lab: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to create lab.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/labs", methods=["GET"])
@require_auth
def get_labs():
    """List active labs with their computer counts."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT l.*,
                   COUNT(c.id) AS computer_count,
                   COALESCE(SUM(c.is_working), 0) AS working_count
            FROM labs l
            LEFT JOIN computers c ON c.lab_id = l.id
            WHERE l.is_active = 1
            GROUP BY l.id
            ORDER BY l.name ASC
            """
        )
        labs = []
        for row in cursor.fetchall():
            lab = lab_to_dict(row)
            lab["computer_count"] = row["computer_count"]
            lab["working_count"] = row["working_count"]
            labs.append(lab)
        return jsonify({"labs": labs, "success": True}), 200
    except sqlite3.Error as e:
        print(f"Database Error in get_labs: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to retrieve labs.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/labs/<int:lab_id>", methods=["GET"])
@require_auth
def get_lab(lab_id):
    """Lab details with its computers, bookings and current occupancy."""
    now = _utcnow()
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM labs WHERE id = ?", (lab_id,))
        lab_row = cursor.fetchone()
        if not lab_row:
            return jsonify({"message": "Lab not found.", "success": False}), 404

        computers = fetch_lab_computers(cursor, lab_id)
        booking_rows = fetch_bookings(
            cursor, "WHERE b.lab_id = ? ORDER BY b.start_time DESC", (lab_id,)
        )
        live = [
            booking_from_row(row) for row in booking_rows
            if row["status"] in (PersistedStatus.PENDING.value, PersistedStatus.APPROVED.value)
        ]
        occupancy = compute_occupancy(
            computers, live, now,
            lab_id=lab_row["id"], lab_name=lab_row["name"],
            lookahead=datetime.timedelta(hours=RESERVED_LOOKAHEAD_HOURS),
        )

        lab = lab_to_dict(lab_row)
        lab["computers"] = [c.to_dict() for c in computers]
        lab["bookings"] = [serialize_booking(row, now) for row in booking_rows]
        lab["occupancy"] = occupancy.to_dict()
        return jsonify({"lab": lab, "success": True}), 200
    except sqlite3.Error as e:
        print(f"Database Error in get_lab: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to retrieve lab.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/labs/<int:lab_id>", methods=["PUT"])
@require_role("admin")
def update_lab(lab_id):
    """Update lab fields (admin only)."""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"message": "Invalid JSON payload.", "success": False}), 400

    is_valid, errors = validate_lab_data(data, partial=True)
    if not is_valid:
        return jsonify({"message": "Validation failed: " + ", ".join(errors), "success": False}), 400

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM labs WHERE id = ?", (lab_id,))
        current = cursor.fetchone()
        if not current:
            return jsonify({"message": "Lab not found.", "success": False}), 404

        name = data["name"].strip() if "name" in data else current["name"]
        location = data["location"].strip() if "location" in data else current["location"]
        description = data.get("description", current["description"])
        capacity = int(data["capacity"]) if "capacity" in data else current["capacity"]
        is_active = (1 if data["is_active"] else 0) if "is_active" in data else current["is_active"]

        cursor.execute(
            """
            UPDATE labs
            SET name = ?, location = ?, description = ?, capacity = ?, is_active = ?, updated_at = ?
            WHERE id = ?
            """,
            (name, location, description, capacity, is_active, _utcnow().isoformat(), lab_id),
        )
        conn.commit()

        cursor.execute("SELECT * FROM labs WHERE id = ?", (lab_id,))
        return jsonify({
            "message": "Lab updated successfully.",
            "lab": lab_to_dict(cursor.fetchone()),
            "success": True
        }), 200
    except sqlite3.IntegrityError as e:
        conn.rollback()
        if "UNIQUE constraint failed: labs.name" in str(e):
            return jsonify({"message": "A lab with this name already exists.", "success": False}), 400
        print(f"Integrity Error in update_lab: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to update lab.", "success": False}), 500
    except sqlite3.Error as e:
        print(f"Database Error in update_lab: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to update lab.", "success": False}), 500
    finally:
        _close(conn)


# --- Computer Endpoints ---

@app.route("/api/labs/<int:lab_id>/computers", methods=["POST"])
@require_role("admin")
def create_computer(lab_id):
    """Add a computer to a lab (admin only)."""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"message": "Invalid JSON payload.", "success": False}), 400

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        return jsonify({"message": "Computer name is required.", "success": False}), 400
    is_working = data.get("is_working", True)
    if not isinstance(is_working, bool):
        return jsonify({"message": "is_working must be true or false.", "success": False}), 400

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT id FROM labs WHERE id = ?", (lab_id,))
        if not cursor.fetchone():
            return jsonify({"message": "Lab not found.", "success": False}), 404

        cursor.execute(
            """
            INSERT INTO computers (lab_id, name, specifications, is_working, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (lab_id, name.strip(), data.get("specifications"), 1 if is_working else 0,
             _utcnow().isoformat()),
        )
        conn.commit()
        computer_id = cursor.lastrowid

        cursor.execute(
            "SELECT id, lab_id, name, specifications, is_working FROM computers WHERE id = ?",
            (computer_id,),
        )
        return jsonify({
            "message": "Computer added successfully.",
            "computer": computer_from_row(cursor.fetchone()).to_dict(),
            "success": True
        }), 201
    except sqlite3.IntegrityError:
        conn.rollback()
        return jsonify({
            "message": "A computer with this name already exists in the lab.",
            "success": False
        }), 400
    except sqlite3.Error as e:
        print(f"Database Error in create_computer: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to add computer.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/computers/<int:computer_id>/status", methods=["PUT"])
@require_role("admin")
def update_computer_status(computer_id):
    """Mark a computer as working or under maintenance (admin only)."""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"message": "Invalid JSON payload.", "success": False}), 400

    if not isinstance(data.get("is_working"), bool):
        return jsonify({"message": "is_working must be true or false.", "success": False}), 400

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT id FROM computers WHERE id = ?", (computer_id,))
        if not cursor.fetchone():
            return jsonify({"message": "Computer not found.", "success": False}), 404

        cursor.execute(
            "UPDATE computers SET is_working = ?, updated_at = ? WHERE id = ?",
            (1 if data["is_working"] else 0, _utcnow().isoformat(), computer_id),
        )
        conn.commit()
        return jsonify({"message": "Computer status updated successfully.", "success": True}), 200
    except sqlite3.Error as e:
        print(f"Database Error in update_computer_status: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to update computer status.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/computers/<int:computer_id>/bookings", methods=["GET"])
@require_auth
def get_computer_bookings(computer_id):
    """Booking history of one computer (past, current and future)."""
    now = _utcnow()
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT id FROM computers WHERE id = ?", (computer_id,))
        if not cursor.fetchone():
            return jsonify({"message": "Computer not found.", "success": False}), 404

        rows = fetch_bookings(
            cursor, "WHERE b.computer_id = ? ORDER BY b.start_time DESC", (computer_id,)
        )
        return jsonify({
            "bookings": [serialize_booking(row, now) for row in rows],
            "success": True
        }), 200
    except sqlite3.Error as e:
        print(f"Database Error in get_computer_bookings: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to retrieve computer bookings.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/labs/<int:lab_id>/available-computers", methods=["GET"])
@require_auth
def get_available_computers(lab_id):
    """Working computers of a lab that are free for the requested interval."""
    try:
        start_time = parse_timestamp(request.args.get("start_time"))
        end_time = parse_timestamp(request.args.get("end_time"))
    except ValueError:
        return booking_error(
            "INVALID_TIMESTAMP", "start_time and end_time are required ISO-8601 timestamps.", 400
        )
    if end_time <= start_time:
        return booking_error("INVALID_INTERVAL", "End time must be after start time.", 400)

    now = _utcnow()
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT id FROM labs WHERE id = ?", (lab_id,))
        if not cursor.fetchone():
            return jsonify({"message": "Lab not found.", "success": False}), 404

        computers = fetch_lab_computers(cursor, lab_id)
        bookings = fetch_live_lab_bookings(cursor, lab_id)
        available = find_available_computers(computers, bookings, start_time, end_time, now=now)
        return jsonify({
            "lab_id": lab_id,
            "start_time": format_timestamp(start_time),
            "end_time": format_timestamp(end_time),
            "computers": [c.to_dict() for c in available],
            "success": True
        }), 200
    except sqlite3.Error as e:
        print(f"Database Error in get_available_computers: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to retrieve available computers.", "success": False}), 500
    finally:
        _close(conn)


# --- Booking Endpoints ---

@app.route("/api/bookings", methods=["POST"])
@require_auth
def create_booking():
    """
    Create a booking request. New bookings always start pending.

    The conflict check and the insert share one BEGIN IMMEDIATE transaction,
    so two requests for the same slot cannot both pass the check.
    """
    data = request.get_json(silent=True)
    if not data or not isinstance(data, dict):
        return jsonify({"message": "Invalid JSON payload.", "success": False}), 400

    now = _utcnow()
    is_valid, error_code, message, fields = validate_booking_request(data, now)
    if not is_valid:
        return booking_error(error_code, message, 400)

    college_id = request.current_user.get("college_id")
    lab_id = fields["lab_id"]
    computer_id = fields["computer_id"]

    conn = get_db_connection()
    try:
        if conn.in_transaction:
            conn.commit()
        cursor = conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")

        cursor.execute("SELECT id, is_active FROM labs WHERE id = ?", (lab_id,))
        lab_row = cursor.fetchone()
        if not lab_row:
            conn.rollback()
            return booking_error("LAB_NOT_FOUND", "Lab not found.", 404)
        if not lab_row["is_active"]:
            conn.rollback()
            return booking_error("LAB_INACTIVE", "This lab is not accepting bookings.", 400)

        if computer_id is not None:
            cursor.execute(
                "SELECT id, is_working FROM computers WHERE id = ? AND lab_id = ?",
                (computer_id, lab_id),
            )
            computer_row = cursor.fetchone()
            if not computer_row:
                conn.rollback()
                return booking_error(
                    "RESOURCE_MISMATCH", "Computer does not belong to this lab.", 400
                )
            if not computer_row["is_working"]:
                conn.rollback()
                return booking_error(
                    "COMPUTER_UNAVAILABLE", "This computer is under maintenance.", 400
                )

        own_rows = fetch_bookings(
            cursor,
            "WHERE b.college_id = ? AND b.status IN ('pending', 'approved')",
            (college_id,),
        )
        active_count = sum(1 for row in own_rows if is_upcoming(booking_from_row(row), now))
        if active_count >= MAX_ACTIVE_BOOKINGS:
            conn.rollback()
            return booking_error(
                "BOOKING_LIMIT",
                f"You can hold at most {MAX_ACTIVE_BOOKINGS} active bookings.",
                400,
            )

        existing = fetch_live_lab_bookings(cursor, lab_id)
        conflicts = find_conflicts(
            fields["start_time"],
            fields["end_time"],
            ResourceScope(lab_id, computer_id),
            existing,
            now=now,
        )
        if conflicts:
            conn.rollback()
            body = {
                "message": "Time slot is already booked.",
                "error": "CONFLICT",
                "conflicting_booking_id": conflicts[0].id,
                "success": False,
            }
            return jsonify(body), 409

        cursor.execute(
            """
            INSERT INTO bookings
                (college_id, lab_id, computer_id, start_time, end_time, status, purpose, created_at)
            VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)
            """,
            (
                college_id,
                lab_id,
                computer_id,
                format_timestamp(fields["start_time"]),
                format_timestamp(fields["end_time"]),
                fields["purpose"],
                now.isoformat(),
            ),
        )
        booking_id = cursor.lastrowid
        conn.commit()

        rows = fetch_bookings(cursor, "WHERE b.id = ?", (booking_id,))
        return jsonify({
            "message": "Booking request created successfully.",
            "booking_id": booking_id,
            "booking": serialize_booking(rows[0], now),
            "success": True
        }), 201
    except sqlite3.Error as e:
        conn.rollback()
        print(f"Database Error in create_booking: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to create booking.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/bookings", methods=["GET"])
@require_auth
def get_bookings():
    """Bookings of the current user; admins and teachers see everyone's (or ?college_id=)."""
    college_id = request.current_user.get("college_id")
    role = request.current_user.get("role")
    now = _utcnow()

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        if role in STAFF_ROLES:
            requested = request.args.get("college_id")
            if requested:
                rows = fetch_bookings(
                    cursor, "WHERE b.college_id = ? ORDER BY b.start_time DESC", (requested,)
                )
            else:
                rows = fetch_bookings(cursor, "ORDER BY b.start_time DESC")
        else:
            rows = fetch_bookings(
                cursor, "WHERE b.college_id = ? ORDER BY b.start_time DESC", (college_id,)
            )

        return jsonify({
            "bookings": [serialize_booking(row, now) for row in rows],
            "success": True
        }), 200
    except sqlite3.Error as e:
        print(f"Database Error in get_bookings: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to retrieve bookings.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/bookings/<int:booking_id>", methods=["DELETE"])
@require_auth
def cancel_booking(booking_id):
    """Cancel a booking. Owners cancel their own; admins and teachers cancel any."""
    college_id = request.current_user.get("college_id")
    role = request.current_user.get("role")
    now = _utcnow()

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        rows = fetch_bookings(cursor, "WHERE b.id = ?", (booking_id,))
        if not rows:
            return jsonify({"message": "Booking not found.", "success": False}), 404

        booking = booking_from_row(rows[0])
        if booking.user_id != college_id and role not in STAFF_ROLES:
            return jsonify({"message": "You can only cancel your own bookings.", "success": False}), 403

        if not can_cancel_booking(booking.status, booking.start_time, booking.end_time, now):
            return booking_error(
                "NOT_CANCELLABLE",
                "Only pending or approved bookings that have not started can be cancelled.",
                400,
            )

        cursor.execute(
            "UPDATE bookings SET status = 'cancelled', updated_at = ? WHERE id = ?",
            (now.isoformat(), booking_id),
        )
        conn.commit()

        rows = fetch_bookings(cursor, "WHERE b.id = ?", (booking_id,))
        return jsonify({
            "message": "Booking cancelled successfully.",
            "booking": serialize_booking(rows[0], now),
            "success": True
        }), 200
    except sqlite3.Error as e:
        print(f"Database Error in cancel_booking: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to cancel booking.", "success": False}), 500
    finally:
        _close(conn)


# --- Admin Booking Endpoints ---

@app.route("/api/admin/bookings", methods=["GET"])
@require_role(*STAFF_ROLES)
def admin_get_bookings():
    """All bookings, optionally filtered by effective status (?status=in_progress)."""
    status_filter = request.args.get("status")
    if status_filter:
        try:
            status_filter = EffectiveStatus(status_filter.lower())
        except ValueError:
            return jsonify({"message": "Invalid status filter.", "success": False}), 400

    now = _utcnow()
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        rows = fetch_bookings(cursor, "ORDER BY b.start_time DESC")
        bookings = [serialize_booking(row, now) for row in rows]
        if status_filter:
            bookings = [b for b in bookings if b["effective_status"] == status_filter.value]
        return jsonify({"bookings": bookings, "success": True}), 200
    except sqlite3.Error as e:
        print(f"Database Error in admin_get_bookings: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to retrieve bookings.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/admin/bookings/<int:booking_id>", methods=["PATCH"])
@require_role(*STAFF_ROLES)
def admin_update_booking(booking_id):
    """Approve, reject or cancel a booking (admin/teacher)."""
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"message": "Invalid JSON payload.", "success": False}), 400

    new_status = str(data.get("status", "")).lower()
    allowed = (
        PersistedStatus.APPROVED.value,
        PersistedStatus.REJECTED.value,
        PersistedStatus.CANCELLED.value,
    )
    if new_status not in allowed:
        return jsonify({"message": "Invalid status.", "success": False}), 400
    new_status = PersistedStatus(new_status)

    now = _utcnow()
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        rows = fetch_bookings(cursor, "WHERE b.id = ?", (booking_id,))
        if not rows:
            return jsonify({"message": "Booking not found.", "success": False}), 404

        booking = booking_from_row(rows[0])
        if new_status == PersistedStatus.CANCELLED:
            if not can_cancel_booking(booking.status, booking.start_time, booking.end_time, now):
                return booking_error(
                    "NOT_CANCELLABLE",
                    "Only pending or approved bookings that have not started can be cancelled.",
                    400,
                )
        else:
            if booking.status != PersistedStatus.PENDING:
                return booking_error(
                    "INVALID_TRANSITION", "Booking not pending or already processed.", 400
                )
            if booking.end_time <= now:
                return booking_error("INVALID_TRANSITION", "Booking has already ended.", 400)

        cursor.execute(
            "UPDATE bookings SET status = ?, updated_at = ? WHERE id = ?",
            (new_status.value, now.isoformat(), booking_id),
        )
        conn.commit()

        rows = fetch_bookings(cursor, "WHERE b.id = ?", (booking_id,))
        return jsonify({
            "message": f"Booking {new_status.value} successfully.",
            "booking": serialize_booking(rows[0], now),
            "success": True
        }), 200
    except sqlite3.Error as e:
        print(f"Database Error in admin_update_booking: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to update booking.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/admin/stats", methods=["GET"])
@require_role(*STAFF_ROLES)
def admin_stats():
    """Headline counts for the admin dashboard."""
    now = _utcnow()
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM users")
        total_users = cursor.fetchone()[0]
        cursor.execute("SELECT COUNT(*) FROM labs")
        total_labs = cursor.fetchone()[0]
        cursor.execute("SELECT COUNT(*) FROM bookings")
        total_bookings = cursor.fetchone()[0]

        rows = fetch_bookings(cursor, "WHERE b.status IN ('pending', 'approved')")
        active_bookings = sum(1 for row in rows if is_upcoming(booking_from_row(row), now))

        return jsonify({
            "total_users": total_users,
            "total_labs": total_labs,
            "total_bookings": total_bookings,
            "active_bookings": active_bookings,
            "success": True
        }), 200
    except sqlite3.Error as e:
        print(f"Database Error in admin_stats: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to retrieve stats.", "success": False}), 500
    finally:
        _close(conn)


# --- Admin User Endpoints ---

def user_to_dict(row):
    return {
        "college_id": row["college_id"],
        "name": row["name"],
        "email": row["email"],
        "role": row["role"],
    }


def _is_last_admin(cursor, row):
    if row["role"] != "admin":
        return False
    cursor.execute("SELECT COUNT(*) FROM users WHERE role = 'admin'")
    return cursor.fetchone()[0] <= 1


@app.route("/api/admin/users/<college_id>", methods=["GET"])
@require_role(*STAFF_ROLES)
def admin_get_user(college_id):
    """Account details of one user (admin/teacher)."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT college_id, name, email, role FROM users WHERE college_id = ?", (college_id,)
        )
        row = cursor.fetchone()
        if not row:
            return jsonify({"message": "User not found.", "success": False}), 404
        return jsonify({"user": user_to_dict(row), "success": True}), 200
    except sqlite3.Error as e:
        print(f"Database Error in admin_get_user: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to retrieve user.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/admin/users/<college_id>", methods=["PUT"])
@require_role("admin")
def admin_update_user(college_id):
    """Edit name, email, role and optionally the password of a user (admin only)."""
    data = request.get_json(silent=True)
    if not data or not isinstance(data, dict):
        return jsonify({"message": "Invalid JSON payload.", "success": False}), 400

    is_valid, errors = validate_user_update(data)
    if not is_valid:
        return jsonify({"message": "Validation failed: " + ", ".join(errors), "success": False}), 400

    name = data["name"].strip()
    email = data["email"].strip()
    role = data["role"]
    password = data.get("password")

    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT college_id, name, email, role FROM users WHERE college_id = ?", (college_id,)
        )
        current = cursor.fetchone()
        if not current:
            return jsonify({"message": "User not found.", "success": False}), 404

        cursor.execute(
            "SELECT college_id FROM users WHERE email = ? AND college_id != ?", (email, college_id)
        )
        if cursor.fetchone():
            return jsonify({"message": "A user with this email already exists.", "success": False}), 400

        if role != "admin" and _is_last_admin(cursor, current):
            return jsonify({"message": "Cannot remove the last admin.", "success": False}), 400

        if password:
            cursor.execute(
                "UPDATE users SET name = ?, email = ?, role = ?, password_hash = ? WHERE college_id = ?",
                (name, email, role, generate_password_hash(password), college_id),
            )
        else:
            cursor.execute(
                "UPDATE users SET name = ?, email = ?, role = ? WHERE college_id = ?",
                (name, email, role, college_id),
            )
        conn.commit()

        cursor.execute(
            "SELECT college_id, name, email, role FROM users WHERE college_id = ?", (college_id,)
        )
        return jsonify({
            "message": "User updated successfully.",
            "user": user_to_dict(cursor.fetchone()),
            "success": True
        }), 200
    except sqlite3.IntegrityError as e:
        conn.rollback()
        if "UNIQUE constraint failed: users.email" in str(e):
            return jsonify({"message": "A user with this email already exists.", "success": False}), 400
        print(f"Integrity Error in admin_update_user: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to update user.", "success": False}), 500
    except sqlite3.Error as e:
        print(f"Database Error in admin_update_user: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to update user.", "success": False}), 500
    finally:
        _close(conn)


@app.route("/api/admin/users/<college_id>", methods=["DELETE"])
@require_role("admin")
def admin_delete_user(college_id):
    """
    Delete a user (admin only). The last admin cannot be deleted.
    Bookings of the user that still hold a slot are cancelled; past ones stay on record.
    """
    now = _utcnow()
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT college_id, name, email, role FROM users WHERE college_id = ?", (college_id,)
        )
        row = cursor.fetchone()
        if not row:
            return jsonify({"message": "User not found.", "success": False}), 404

        if _is_last_admin(cursor, row):
            return jsonify({"message": "Cannot delete the last admin user.", "success": False}), 400

        rows = fetch_bookings(
            cursor,
            "WHERE b.college_id = ? AND b.status IN ('pending', 'approved')",
            (college_id,),
        )
        to_cancel = [
            booking.id for booking in map(booking_from_row, rows)
            if booking.effective_status(now) in LIVE_STATUSES
        ]
        for booking_id in to_cancel:
            cursor.execute(
                "UPDATE bookings SET status = 'cancelled', updated_at = ? WHERE id = ?",
                (now.isoformat(), booking_id),
            )
        cursor.execute("DELETE FROM users WHERE college_id = ?", (college_id,))
        conn.commit()

        return jsonify({
            "message": "User deleted successfully.",
            "cancelled_bookings": len(to_cancel),
            "success": True
        }), 200
    except sqlite3.Error as e:
        conn.rollback()
        print(f"Database Error in admin_delete_user: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to delete user.", "success": False}), 500
    finally:
        _close(conn)


# --- Seat Occupancy Endpoint ---

@app.route("/api/seat-occupancy", methods=["GET"])
@require_auth
def get_seat_occupancy():
    """Occupancy snapshot for one lab (?lab_id=) or for every active lab."""
    lab_id = request.args.get("lab_id")
    if lab_id is not None:
        try:
            lab_id = int(lab_id)
        except ValueError:
            return jsonify({"message": "lab_id must be an integer.", "success": False}), 400

    now = _utcnow()
    lookahead = datetime.timedelta(hours=RESERVED_LOOKAHEAD_HOURS)
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        if lab_id is not None:
            cursor.execute("SELECT id, name FROM labs WHERE id = ?", (lab_id,))
            lab_row = cursor.fetchone()
            if not lab_row:
                return jsonify({"message": "Lab not found.", "success": False}), 404
            lab_rows = [lab_row]
        else:
            cursor.execute("SELECT id, name FROM labs WHERE is_active = 1 ORDER BY name ASC")
            lab_rows = cursor.fetchall()

        snapshots = []
        for lab_row in lab_rows:
            occupancy = compute_occupancy(
                fetch_lab_computers(cursor, lab_row["id"]),
                fetch_live_lab_bookings(cursor, lab_row["id"]),
                now,
                lab_id=lab_row["id"],
                lab_name=lab_row["name"],
                lookahead=lookahead,
            )
            snapshots.append(occupancy.to_dict())

        if lab_id is not None:
            return jsonify({"occupancy": snapshots[0], "success": True}), 200
        return jsonify({"labs": snapshots, "success": True}), 200
    except sqlite3.Error as e:
        print(f"Database Error in get_seat_occupancy: {e}")
        traceback.print_exc()
        return jsonify({"message": "Failed to fetch seat occupancy data.", "success": False}), 500
    finally:
        _close(conn)


# --- Application Runner ---
# Initialize database on startup
init_db()

if __name__ == "__main__":
    # Use environment variable for debug mode (default: False for security)
    debug_mode = os.getenv("FLASK_DEBUG", "False").lower() == "true"
    app.run(debug=debug_mode, port=5000)
