import itertools, smtplib, threading
from urllib.parse import urlparse, parse_qs

import pytest
from mysql.connector import Error, IntegrityError

import app as portal


def _sql(statement):
    return " ".join(statement.split())


class FakeStore:
    """
    In-memory stand-in for the MySQL schema. It understands exactly the
    statements the invite service issues; anything else fails the test.
    Writes are visible immediately and undone on rollback.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.companies = {}
        self.employers = {}
        self.invites = {}
        self.statements = []
        self.fail_on = None
        self._ids = {"companies": itertools.count(1), "employers": itertools.count(1), "invites": itertools.count(1)}

    def _next_id(self, table, requested=None):
        if requested is not None:
            return requested
        table_rows = getattr(self, table)
        while True:
            candidate = next(self._ids[table])
            if candidate not in table_rows:
                return candidate

    def add_company(self, name, id=None):
        company_id = self._next_id("companies", id)
        self.companies[company_id] = {"ID": company_id, "NAME": name}
        return company_id

    def add_employer(self, name, email, company_id=None, role="owner", id=None):
        employer_id = self._next_id("employers", id)
        self.employers[employer_id] = {
            "ID": employer_id, "NAME": name, "EMAIL": email, "PASSWORD_HASH": None,
            "COMPANY_ID": company_id, "ROLE": role, "DESIGNATION": None, "IS_VERIFIED": 1,
        }
        return employer_id

    def connect(self):
        return FakeConnection(self)


class FakeConnection:
    def __init__(self, store):
        self.store = store
        self.undo = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def start_transaction(self):
        self.undo = []

    def cursor(self, dictionary=False, **kwargs):
        assert dictionary, "invite queries read rows by column name"
        return FakeCursor(self)

    def commit(self):
        self.undo = []
        self.commits += 1

    def rollback(self):
        with self.store.lock:
            while self.undo:
                self.undo.pop()()
        self.rollbacks += 1

    def close(self):
        if self.undo:
            self.rollback()
        self.closed = True


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.store = conn.store
        self.rows = []
        self.rowcount = -1
        self.lastrowid = None

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)

    def close(self):
        pass

    def _set(self, table, row_id, changes):
        row = getattr(self.store, table)[row_id]
        previous = {key: row[key] for key in changes}
        row.update(changes)
        self.conn.undo.append(lambda: row.update(previous))

    def _insert(self, table, row):
        rows = getattr(self.store, table)
        rows[row["ID"]] = row
        self.conn.undo.append(lambda: rows.pop(row["ID"], None))
        self.lastrowid = row["ID"]
        self.rowcount = 1

    def execute(self, statement, params=()):
        sql = _sql(statement)
        store = self.store
        with store.lock:
            store.statements.append(sql)
            if store.fail_on and sql.startswith(store.fail_on):
                raise Error(msg="Lost connection to MySQL server during query")
            self.rows = []
            self.rowcount = 0

            if sql.startswith("SELECT ID, NAME FROM COMPANIES WHERE ID = %s"):
                company = store.companies.get(params[0])
                self.rows = [dict(company)] if company else []

            elif sql.startswith("INSERT INTO INVITES"):
                company_id, email, role, token_hash, expires_at, created_by, created_at = params
                self._insert("invites", {
                    "ID": store._next_id("invites"), "COMPANY_ID": company_id, "EMAIL": email, "ROLE": role,
                    "TOKEN_HASH": token_hash, "EXPIRES_AT": expires_at, "USED": 0, "USED_BY": None,
                    "USED_AT": None, "CREATED_BY": created_by, "CREATED_AT": created_at,
                })

            elif sql.startswith("SELECT I.ID, I.COMPANY_ID, I.EMAIL, I.ROLE, I.TOKEN_HASH"):
                (now,) = params
                for invite in store.invites.values():
                    company = store.companies.get(invite["COMPANY_ID"])
                    if company and invite["USED"] == 0 and invite["EXPIRES_AT"] > now:
                        row = {k: invite[k] for k in ("ID", "COMPANY_ID", "EMAIL", "ROLE", "TOKEN_HASH")}
                        row["COMPANY_NAME"] = company["NAME"]
                        self.rows.append(row)

            elif sql.startswith("UPDATE INVITES SET USED = 1"):
                used_by, used_at, invite_id, now = params
                invite = store.invites.get(invite_id)
                if invite and invite["USED"] == 0 and invite["EXPIRES_AT"] > now:
                    self._set("invites", invite_id, {"USED": 1, "USED_BY": used_by, "USED_AT": used_at})
                    self.rowcount = 1

            elif sql.startswith("SELECT ID FROM EMPLOYERS WHERE ID = %s FOR UPDATE"):
                employer = store.employers.get(params[0])
                self.rows = [{"ID": employer["ID"]}] if employer else []

            elif sql.startswith("UPDATE EMPLOYERS SET COMPANY_ID = %s, ROLE = %s"):
                company_id, role, employer_id = params
                if employer_id in store.employers:
                    self._set("employers", employer_id, {"COMPANY_ID": company_id, "ROLE": role})
                    self.rowcount = 1

            elif sql.startswith("INSERT INTO EMPLOYERS"):
                name, email, password_hash, company_id, role, designation = params
                if any(e["EMAIL"] == email for e in store.employers.values()):
                    raise IntegrityError(msg=f"Duplicate entry '{email}' for key 'EMAIL'", errno=1062)
                self._insert("employers", {
                    "ID": store._next_id("employers"), "NAME": name, "EMAIL": email,
                    "PASSWORD_HASH": password_hash, "COMPANY_ID": company_id, "ROLE": role,
                    "DESIGNATION": designation, "IS_VERIFIED": 1,
                })

            elif sql.startswith("SELECT I.ID, I.EMAIL, I.ROLE, I.USED, I.CREATED_AT"):
                (company_id,) = params
                rows = [i for i in store.invites.values() if i["COMPANY_ID"] == company_id]
                rows.sort(key=lambda i: (i["CREATED_AT"], i["ID"]), reverse=True)
                for invite in rows:
                    creator = store.employers.get(invite["CREATED_BY"])
                    self.rows.append({
                        "ID": invite["ID"], "EMAIL": invite["EMAIL"], "ROLE": invite["ROLE"],
                        "USED": invite["USED"], "CREATED_AT": invite["CREATED_AT"],
                        "EXPIRES_AT": invite["EXPIRES_AT"],
                        "INVITED_BY_NAME": creator["NAME"] if creator else None,
                    })

            else:
                raise AssertionError(f"Unexpected SQL: {sql}")


class RecordingMailer:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send_invite(self, to_email, link, company_name, role):
        if self.fail:
            raise smtplib.SMTPServerDisconnected("Connection unexpectedly closed")
        self.sent.append({"to": to_email, "link": link, "company_name": company_name, "role": role})

    def last_token(self):
        return token_from_link(self.sent[-1]["link"])


def token_from_link(link):
    return parse_qs(urlparse(link).query)["token"][0]


@pytest.fixture
def store():
    store = FakeStore()
    store.add_company("Acme", id=5)
    store.add_company("Globex", id=6)
    store.add_employer("Olivia Owner", "owner@acme.com", company_id=5, role="owner", id=1)
    store.add_employer("Bob", "bob@x.com", id=42)
    return store

@pytest.fixture
def mailer():
    return RecordingMailer()

@pytest.fixture
def owner():
    return {"id": 1, "role": "owner", "company_id": 5}

@pytest.fixture
def client(store, mailer, monkeypatch):
    monkeypatch.setattr(portal, "get_db_connection", store.connect)
    monkeypatch.setattr(portal, "get_mailer", lambda: mailer)
    portal.app.config["TESTING"] = True
    with portal.app.test_client() as client:
        yield client

@pytest.fixture
def auth_header():
    def make(employer_id, email, role, company_id=None):
        token = portal.issue_session_token({"id": employer_id, "email": email, "role": role, "company_id": company_id})
        return {"Authorization": f"Bearer {token}"}
    return make
