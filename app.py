from flask import Flask, request, jsonify
import mysql.connector
from mysql.connector import Error, IntegrityError
from werkzeug.exceptions import HTTPException
import os, atexit, logging, datetime, jwt
from functools import wraps
from dotenv import load_dotenv

import invites
from invites import InviteError
from mailer import init_mailer, get_mailer, shutdown_mailer

load_dotenv()
app = Flask(__name__)


# ---------------- CONFIG ----------------
db_config = {
"host": os.getenv("HOST", "localhost"),
"user": os.getenv("USER"),
"password": os.getenv("PASSWORD"),
"database": os.getenv("DATABASE", "job_portal")
}

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

app.config["SECRET_KEY"] = os.getenv("SECRET_KEY")
if not app.config["SECRET_KEY"]:
    app.config["SECRET_KEY"] = "dev-insecure-secret-change-me"
    app.logger.warning("SECRET_KEY not set; using insecure development default.")

SESSION_EXPIRY_HOURS = int(os.getenv("SESSION_EXPIRY_HOURS", 2))

# Invites
APP_URL = os.getenv("APP_URL", "http://localhost:5000")
INVITE_ISSUER_ROLES = tuple(r.strip() for r in os.getenv("INVITE_ISSUER_ROLES", ",".join(invites.DEFAULT_ISSUER_ROLES)).split(",") if r.strip())
INVITE_HASH_ROUNDS = max(int(os.getenv("INVITE_HASH_ROUNDS", invites.MIN_HASH_ROUNDS)), invites.MIN_HASH_ROUNDS)

# Email
SMTP_SERVER, SMTP_PORT = os.getenv("SMTP_SERVER", "localhost"), int(os.getenv("SMTP_PORT", 587))
EMAIL_ADDRESS, EMAIL_PASSWORD = os.getenv("EMAIL_ADDRESS"), os.getenv("EMAIL_PASSWORD")

init_mailer(SMTP_SERVER, SMTP_PORT, EMAIL_ADDRESS, EMAIL_PASSWORD, expiry_days=invites.INVITE_TTL.days)
atexit.register(shutdown_mailer)


# ---------------- HELPERS ----------------
def validate_json(required_fields):
    if not request.is_json:
        return None, (jsonify({"error": "Invalid JSON format!"}), 400)
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, (jsonify({"error": "Malformed JSON!"}), 400)
    for f in required_fields:
        if f not in data:
            return None, (jsonify({"error": f"Missing required field: {f}!"}), 400)
    return data, None

def get_server_connection():
    return mysql.connector.connect(
        host=db_config["host"],
        user=db_config["user"],
        password=db_config["password"]
    )

def get_db_connection():
    return mysql.connector.connect(**db_config)

def init_db():
    conn = get_server_connection()
    cursor = conn.cursor()
    cursor.execute(f"CREATE DATABASE IF NOT EXISTS {db_config['database']}")
    cursor.close()
    conn.close()
    conn = get_db_connection()
    cursor = conn.cursor()
    with open(os.path.join(os.path.dirname(os.path.abspath(__file__)), "schema.sql"), "r") as f:
        schema_sql = f.read()
    for statement in schema_sql.split(";"):
        stmt = statement.strip()
        if stmt:
            cursor.execute(stmt)
    conn.commit()
    cursor.close()
    conn.close()

def issue_session_token(employer):
    return jwt.encode(
        {
            "user": employer["id"],
            "email": employer["email"],
            "role": employer["role"],
            "company_id": employer["company_id"],
            "exp": datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=SESSION_EXPIRY_HOURS)
        },
        app.config["SECRET_KEY"],
        algorithm="HS256"
    )

def token_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        token = None
        if "Authorization" in request.headers:
            try:
                token = request.headers["Authorization"].split(" ")[1]
            except IndexError:
                return jsonify({"error": "Invalid token header!"}), 401
        if not token:
            return jsonify({"error": "Token is missing!"}), 401
        try:
            data = jwt.decode(token, app.config["SECRET_KEY"], algorithms=["HS256"])
            current_user = {
                "id": data["user"],
                "email": data.get("email"),
                "company_id": data.get("company_id"),
            }
            role = data["role"]
        except (jwt.InvalidTokenError, KeyError):
            return jsonify({"error": "Access denied!"}), 401
        return f(current_user, role, *args, **kwargs)
    return decorated

def invite_error(e):
    return jsonify({"error": e.message}), e.status_code

@app.errorhandler(Exception)
def handle_uncaught(e):
    if isinstance(e, HTTPException):
        return e
    app.logger.exception("Unhandled exception", exc_info=e)
    return jsonify({"error": "Unexpected error!"}), 500


# ---------------- ROUTES ----------------
@app.route("/invites", methods=["POST"])
@token_required
def create_invite(current_user, role):
    data, error = validate_json(["email", "role"])
    if error: return error
    issuer = {"id": current_user["id"], "role": role, "company_id": current_user["company_id"]}
    try:
        conn = get_db_connection()
        invite_id = invites.create_invite(
            conn, issuer, data["email"], data["role"], get_mailer(), APP_URL,
            issuer_roles=INVITE_ISSUER_ROLES, hash_rounds=INVITE_HASH_ROUNDS
        )
        return jsonify({"message": "Invite created and email sent successfully!", "invite_id": invite_id}), 201
    except InviteError as e:
        return invite_error(e)
    except Error:
        app.logger.exception("Database error while creating invite")
        return jsonify({"error": "Database/server error!"}), 500
    finally:
        if 'conn' in locals() and conn:
            conn.close()

@app.route("/invites", methods=["GET"])
@token_required
def view_company_invites(current_user, role):
    try:
        conn = get_db_connection()
        result = invites.list_company_invites(conn, current_user["company_id"])
        return jsonify({"message": "Invites fetched successfully!", "invites": result, "count": len(result)}), 200
    except InviteError as e:
        return invite_error(e)
    except Error:
        app.logger.exception("Database error while listing invites")
        return jsonify({"error": "Database/server error!"}), 500
    finally:
        if 'conn' in locals() and conn:
            conn.close()

@app.route("/invites/validate", methods=["GET"])
@app.route("/invites/accept", methods=["GET"])
def validate_invite():
    try:
        conn = get_db_connection()
        result = invites.validate_invite(conn, request.args.get("token"))
        return jsonify(result), 200
    except InviteError as e:
        return invite_error(e)
    except Error:
        app.logger.exception("Database error while validating invite")
        return jsonify({"error": "Database/server error!"}), 500
    finally:
        if 'conn' in locals() and conn:
            conn.close()

@app.route("/invites/accept", methods=["POST"])
@token_required
def accept_invite(current_user, role):
    data, error = validate_json(["token"])
    if error: return error
    try:
        conn = get_db_connection()
        invites.accept_invite(conn, current_user, data["token"])
        return jsonify({"message": "Invite accepted successfully!"}), 200
    except InviteError as e:
        return invite_error(e)
    except Error:
        app.logger.exception("Database error while accepting invite")
        return jsonify({"error": "Database/server error!"}), 500
    finally:
        if 'conn' in locals() and conn:
            conn.close()

@app.route("/invites/register", methods=["POST"])
def register_with_invite():
    data, error = validate_json(["token", "name", "password"])
    if error: return error
    try:
        conn = get_db_connection()
        employer = invites.register_with_invite(
            conn, data["token"], data["name"], data["password"], data.get("designation"),
            hash_rounds=INVITE_HASH_ROUNDS
        )
        return jsonify({"message": "Registration successful!", "token": issue_session_token(employer)}), 201
    except InviteError as e:
        return invite_error(e)
    except IntegrityError:
        return jsonify({"error": "Employer with this email already exists!"}), 409
    except Error:
        app.logger.exception("Database error while registering through invite")
        return jsonify({"error": "Database/server error!"}), 500
    finally:
        if 'conn' in locals() and conn:
            conn.close()


# ---------------- MAIN FUNCTION ----------------
if __name__ == '__main__':
    init_db()
    print("Database initiated successfully.")
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", 5000)))
