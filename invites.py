import re, logging, secrets, datetime
import bcrypt
from urllib.parse import quote
from mysql.connector import IntegrityError

logger = logging.getLogger(__name__)


# ---------------- CONSTANTS ----------------
INVITE_TTL = datetime.timedelta(days=7)
MIN_HASH_ROUNDS = 10
TOKEN_BYTES = 32
ASSIGNABLE_ROLES = ("admin", "recruiter", "viewer")
DEFAULT_ISSUER_ROLES = ("owner", "admin", "recruiter")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TOKEN_RE = re.compile(r"^[0-9a-f]{%d}$" % (TOKEN_BYTES * 2))
INVALID_TOKEN_MESSAGE = "Invalid, used, or expired token"


# ---------------- ERRORS ----------------
class InviteError(Exception):
    """Base error; ``message`` is safe to return to the client."""
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message

class ValidationError(InviteError):
    status_code = 400

class AuthorizationError(InviteError):
    status_code = 403

class NotFoundError(InviteError):
    status_code = 404

class ConflictError(InviteError):
    # used, expired and unknown tokens all end up here with the same message
    status_code = 400

class DependencyFailure(InviteError):
    status_code = 500


# ---------------- HELPERS ----------------
def utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None, microsecond=0)

def normalize_email(email):
    return (email or "").strip().lower()

def generate_token():
    return secrets.token_hex(TOKEN_BYTES)

def hash_secret(secret, rounds=MIN_HASH_ROUNDS):
    rounds = max(int(rounds), MIN_HASH_ROUNDS)
    return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds)).decode("utf-8")

def verify_secret(secret, hashed):
    try:
        return bcrypt.checkpw(secret.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Skipping malformed hash during token verification")
        return False

def build_accept_link(app_url, token):
    return f"{app_url.rstrip('/')}/invites/accept?token={quote(token)}"

def find_valid_invite(cursor, token, now):
    """
    Scan every outstanding invite and return the first whose hash matches
    ``token``, or None. Tokens that cannot have been issued by us are
    rejected without touching the store.
    """
    if not TOKEN_RE.match(token):
        return None
    cursor.execute("""
        SELECT I.ID, I.COMPANY_ID, I.EMAIL, I.ROLE, I.TOKEN_HASH, C.NAME AS COMPANY_NAME
        FROM INVITES I INNER JOIN COMPANIES C
        ON C.ID = I.COMPANY_ID
        WHERE I.USED = 0 AND I.EXPIRES_AT > %s
    """, (now,))
    candidates = cursor.fetchall()
    logger.debug("Scanning %d outstanding invites", len(candidates))
    for invite in candidates:
        if verify_secret(token, invite["TOKEN_HASH"]):
            return invite
    return None

def _require_token(token):
    token = (token or "").strip() if isinstance(token, str) else ""
    if not token:
        raise ValidationError("Token is required")
    return token

def _mark_used(cursor, invite_id, employer_id, now):
    cursor.execute("""
        UPDATE INVITES
        SET USED = 1, USED_BY = %s, USED_AT = %s
        WHERE ID = %s AND USED = 0 AND EXPIRES_AT > %s
    """, (employer_id, now, invite_id, now))
    if cursor.rowcount != 1:
        # someone else redeemed it between our scan and this update
        raise ConflictError(INVALID_TOKEN_MESSAGE)


# ---------------- OPERATIONS ----------------
def create_invite(conn, issuer, email, role, mailer, app_url,
                  issuer_roles=DEFAULT_ISSUER_ROLES, hash_rounds=MIN_HASH_ROUNDS):
    """
    Issue an invite for ``email`` to join the issuer's company with ``role``.

    ``issuer`` is the authenticated identity: a mapping with ``id``, ``role``
    and ``company_id``. The row is committed only once the email has been
    handed to ``mailer``; a failed send rolls the insert back. Returns the
    new invite id. The plaintext token leaves this function only inside the
    email.
    """
    if not isinstance(email, str) or not EMAIL_RE.match(email.strip()):
        raise ValidationError("Invalid email address")
    if role not in ASSIGNABLE_ROLES:
        raise ValidationError("Invalid role")
    if issuer.get("role") not in issuer_roles:
        raise AuthorizationError("Only owners or admins can create invites")
    email = normalize_email(email)

    cursor = conn.cursor(dictionary=True, buffered=True)
    try:
        conn.start_transaction()
        cursor.execute("""
            SELECT ID, NAME FROM COMPANIES
            WHERE ID = %s
        """, (issuer.get("company_id"),))
        company = cursor.fetchone()
        if not company:
            raise NotFoundError("Company not found")

        token = generate_token()
        created_at = utcnow()
        expires_at = created_at + INVITE_TTL
        cursor.execute("""
            INSERT INTO INVITES
            (COMPANY_ID, EMAIL, ROLE, TOKEN_HASH, EXPIRES_AT, USED, CREATED_BY, CREATED_AT)
            VALUES (%s, %s, %s, %s, %s, 0, %s, %s)
        """, (company["ID"], email, role, hash_secret(token, hash_rounds), expires_at, issuer.get("id"), created_at))
        invite_id = cursor.lastrowid

        try:
            mailer.send_invite(email, build_accept_link(app_url, token), company["NAME"], role)
        except Exception as e:
            logger.error("Failed to send invite %s to %s: %s", invite_id, email, e)
            raise DependencyFailure("Failed to send invite email") from e

        conn.commit()
        logger.info("Invite %s created for %s (company=%s, role=%s)", invite_id, email, company["ID"], role)
        return invite_id
    except Exception:
        conn.rollback()
        raise
    finally:
        cursor.close()

def validate_invite(conn, token):
    """Read-only lookup used to pre-fill the acceptance form."""
    token = _require_token(token)
    cursor = conn.cursor(dictionary=True, buffered=True)
    try:
        invite = find_valid_invite(cursor, token, utcnow())
    finally:
        cursor.close()
    if not invite:
        raise ConflictError(INVALID_TOKEN_MESSAGE)
    return {
        "email": invite["EMAIL"],
        "company_id": invite["COMPANY_ID"],
        "company_name": invite["COMPANY_NAME"],
        "role": invite["ROLE"],
    }

def accept_invite(conn, identity, token):
    """
    Redeem ``token`` for the authenticated employer ``identity`` (``id`` and
    ``email``): mark the invite used and move the employer into the invite's
    company with the invited role. Both writes commit together or not at all.
    """
    token = _require_token(token)
    employer_id = identity.get("id")
    cursor = conn.cursor(dictionary=True, buffered=True)
    try:
        conn.start_transaction()
        now = utcnow()
        invite = find_valid_invite(cursor, token, now)
        if not invite:
            raise ConflictError(INVALID_TOKEN_MESSAGE)
        if normalize_email(invite["EMAIL"]) != normalize_email(identity.get("email")):
            raise AuthorizationError("Invite is not for this email")

        cursor.execute("""
            SELECT ID FROM EMPLOYERS
            WHERE ID = %s FOR UPDATE
        """, (employer_id,))
        if not cursor.fetchone():
            raise NotFoundError("Employer not found")

        _mark_used(cursor, invite["ID"], employer_id, now)
        cursor.execute("""
            UPDATE EMPLOYERS
            SET COMPANY_ID = %s, ROLE = %s
            WHERE ID = %s
        """, (invite["COMPANY_ID"], invite["ROLE"], employer_id))
        conn.commit()
        logger.info("Invite %s accepted by employer %s", invite["ID"], employer_id)
        return {"company_id": invite["COMPANY_ID"], "role": invite["ROLE"]}
    except Exception:
        conn.rollback()
        raise
    finally:
        cursor.close()

def register_with_invite(conn, token, name, password, designation=None, hash_rounds=MIN_HASH_ROUNDS):
    """
    Create a verified employer account for the invitee and redeem the invite
    in one transaction. Returns the new employer as a dict.
    """
    token = _require_token(token)
    name = (name or "").strip() if isinstance(name, str) else ""
    if not name or not password:
        raise ValidationError("Token, name, and password are required")
    if not isinstance(password, str) or len(password) < 8:
        raise ValidationError("Password must be at least 8 characters")
    if len(password.encode("utf-8")) > 72:
        raise ValidationError("Password must be at most 72 bytes")

    cursor = conn.cursor(dictionary=True, buffered=True)
    try:
        conn.start_transaction()
        now = utcnow()
        invite = find_valid_invite(cursor, token, now)
        if not invite:
            raise ConflictError(INVALID_TOKEN_MESSAGE)

        cursor.execute("""
            INSERT INTO EMPLOYERS
            (NAME, EMAIL, PASSWORD_HASH, COMPANY_ID, ROLE, DESIGNATION, IS_VERIFIED)
            VALUES (%s, %s, %s, %s, %s, %s, 1)
        """, (name, invite["EMAIL"], hash_secret(password, hash_rounds), invite["COMPANY_ID"], invite["ROLE"], designation or None))
        employer_id = cursor.lastrowid

        _mark_used(cursor, invite["ID"], employer_id, now)
        conn.commit()
        logger.info("Employer %s registered through invite %s", employer_id, invite["ID"])
        return {
            "id": employer_id,
            "email": invite["EMAIL"],
            "company_id": invite["COMPANY_ID"],
            "role": invite["ROLE"],
        }
    except IntegrityError:
        conn.rollback()
        logger.warning("Registration through invite rejected: employer email already exists")
        raise
    except Exception:
        conn.rollback()
        raise
    finally:
        cursor.close()

def list_company_invites(conn, company_id):
    if not company_id:
        raise NotFoundError("Company not found")
    cursor = conn.cursor(dictionary=True, buffered=True)
    try:
        cursor.execute("""
            SELECT I.ID, I.EMAIL, I.ROLE, I.USED, I.CREATED_AT, I.EXPIRES_AT, E.NAME AS INVITED_BY_NAME
            FROM INVITES I LEFT JOIN EMPLOYERS E
            ON E.ID = I.CREATED_BY
            WHERE I.COMPANY_ID = %s
            ORDER BY I.CREATED_AT DESC, I.ID DESC
        """, (company_id,))
        rows = cursor.fetchall()
    finally:
        cursor.close()
    return [{
        "id": row["ID"],
        "email": row["EMAIL"],
        "role": row["ROLE"],
        "used": bool(row["USED"]),
        "created_at": row["CREATED_AT"].isoformat() if row["CREATED_AT"] else None,
        "expires_at": row["EXPIRES_AT"].isoformat() if row["EXPIRES_AT"] else None,
        "invited_by_name": row["INVITED_BY_NAME"],
    } for row in rows]
