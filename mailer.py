import smtplib, logging, threading
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr

logger = logging.getLogger(__name__)

INVITE_SUBJECT = "Invitation to Join {company_name}"

INVITE_TEXT = """You've been invited to join {company_name} as {role}.

Open the link below to accept the invitation:
{link}

This link expires in {expiry_days} days. If you were not expecting this invitation you can ignore this email.
"""

INVITE_HTML = """
<h3>You've been invited to join {company_name}!</h3>
<p>You have been invited as <strong>{role}</strong>. Click the link below to accept the invitation:</p>
<p><a href="{link}">Accept Invitation</a></p>
<p>This link expires in {expiry_days} days.</p>
"""


class Mailer:
    """
    Process-wide SMTP client. The connection is opened on first use, reused
    across requests and closed by ``close()`` at shutdown.
    """

    def __init__(self, server, port, address, password, sender_name="JOB PORTAL SYSTEM", timeout=10, expiry_days=7):
        self.server = server
        self.port = port
        self.address = address
        self.password = password
        self.sender_name = sender_name
        self.timeout = timeout
        self.expiry_days = expiry_days
        self._smtp = None
        self._lock = threading.Lock()

    def _connect(self):
        smtp = smtplib.SMTP(self.server, self.port, timeout=self.timeout)
        smtp.starttls()
        if self.address and self.password:
            smtp.login(self.address, self.password)
        logger.info("SMTP connection opened to %s:%s", self.server, self.port)
        return smtp

    def _connection(self):
        if self._smtp is not None:
            try:
                self._smtp.noop()
                return self._smtp
            except (smtplib.SMTPException, OSError):
                logger.info("SMTP connection went stale, reconnecting")
                self._discard()
        self._smtp = self._connect()
        return self._smtp

    def _discard(self):
        try:
            self._smtp.close()
        finally:
            self._smtp = None

    def send(self, to_email, subject, text, html=None):
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.sender_name, self.address))
        msg["To"] = to_email
        msg.attach(MIMEText(text, "plain", "utf-8"))
        if html:
            msg.attach(MIMEText(html, "html", "utf-8"))
        with self._lock:
            try:
                self._connection().send_message(msg)
            except (smtplib.SMTPException, OSError):
                if self._smtp is not None:
                    self._discard()
                raise

    def send_invite(self, to_email, link, company_name, role):
        values = {"company_name": company_name, "role": role, "link": link, "expiry_days": self.expiry_days}
        self.send(
            to_email,
            INVITE_SUBJECT.format(**values),
            INVITE_TEXT.format(**values),
            INVITE_HTML.format(**values),
        )
        logger.info("Invite email sent to %s", to_email)

    def close(self):
        with self._lock:
            if self._smtp is None:
                return
            try:
                self._smtp.quit()
            except (smtplib.SMTPException, OSError) as e:
                logger.warning("SMTP quit failed: %s", e)
                self._smtp.close()
            finally:
                self._smtp = None
            logger.info("SMTP connection closed")


_mailer = None

def init_mailer(server, port, address, password, **kwargs):
    global _mailer
    if _mailer is not None:
        _mailer.close()
    _mailer = Mailer(server, port, address, password, **kwargs)
    return _mailer

def get_mailer():
    if _mailer is None:
        raise RuntimeError("Mailer is not initialised; call init_mailer() at startup")
    return _mailer

def shutdown_mailer():
    global _mailer
    if _mailer is not None:
        _mailer.close()
        _mailer = None
