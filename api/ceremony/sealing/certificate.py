from io import BytesIO
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas
from ..audit_events import EVENT_DESCRIPTIONS, format_event_type

LEFT = 72
TOP = 750
BOTTOM = 72
WIDTH = 468


class _Cursor:
    """Top-down text flow with page breaks."""

    def __init__(self, c):
        self.c = c
        self.y = TOP

    def line(self, text: str, font="Helvetica", size=10, indent=0, gap=14):
        self.c.setFont(font, size)
        for chunk in simpleSplit(text, font, size, WIDTH - indent) or [""]:
            if self.y < BOTTOM:
                self.c.showPage()
                self.y = TOP
                self.c.setFont(font, size)
            self.c.drawString(LEFT + indent, self.y, chunk)
            self.y -= gap

    def skip(self, amount=10):
        self.y -= amount


def _fmt(ts) -> str:
    return ts.strftime("%Y-%m-%d %H:%M:%S UTC") if ts else "-"


def render_certificate(envelope, documents, signers, events, sealed_hash: str, chain_ok: bool, completed_at) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    cur = _Cursor(c)
    cur.line("Certificate of Completion", font="Helvetica-Bold", size=16, gap=22)
    cur.line("Electronic signature audit trail", size=11, gap=24)

    cur.line("Envelope", font="Helvetica-Bold", size=12, gap=18)
    cur.line(f"Envelope ID: {envelope.id}")
    cur.line(f"Subject: {envelope.subject}")
    cur.line(f"Signing order: {envelope.signing_order}")
    cur.line(f"Sent: {_fmt(envelope.sent_at)}")
    cur.line(f"Completed: {_fmt(completed_at)}")
    cur.line(f"Sealed document SHA-256: {sealed_hash}", font="Courier", size=8)
    cur.skip()

    cur.line("Documents", font="Helvetica-Bold", size=12, gap=18)
    for doc in documents:
        cur.line(f"{doc.order + 1}. {doc.filename}")
        cur.line(f"Original SHA-256: {doc.document_hash}", font="Courier", size=8, indent=14)
    cur.skip()

    cur.line("Signers", font="Helvetica-Bold", size=12, gap=18)
    for s in signers:
        cur.line(f"{s.name} <{s.email}>  role={s.role}  status={s.status}")
        if s.delegated_from:
            cur.line(f"Delegate of signer #{s.delegated_from}", indent=14)
        cur.line(
            f"Consented: {_fmt(s.consented_at)}   Signed: {_fmt(s.signed_at)}   IP: {s.ip_address or '-'}",
            size=9, indent=14,
        )
    cur.skip()

    cur.line("Audit trail", font="Helvetica-Bold", size=12, gap=18)
    cur.line(f"Hash chain: {'verified' if chain_ok else 'BROKEN'}", size=9)
    for ev in events:
        description = EVENT_DESCRIPTIONS.get(ev.event_type, format_event_type(ev.event_type))
        where = f" from {ev.ip_address}" if ev.ip_address else ""
        if ev.geolocation:
            where += f" ({ev.geolocation})"
        cur.line(f"{_fmt(ev.created_at)}  {format_event_type(ev.event_type)}: {description}", size=9)
        cur.line(f"by {ev.actor}{where}", size=8, indent=14, gap=11)
        cur.line(f"hash {ev.hash}", font="Courier", size=7, indent=14, gap=12)
    c.showPage(); c.save()
    return buf.getvalue()
