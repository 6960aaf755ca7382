from itertools import groupby
from io import BytesIO
from typing import Any, Iterable, List, Optional
from pydantic import BaseModel
from pypdf import PdfReader, PdfWriter
from pypdf.generic import DecodedStreamObject, DictionaryObject, IndirectObject, NameObject, StreamObject
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

IMAGE_TYPES = ("signature", "initial", "attachment")
CHECKED_VALUES = ("true", "on", "1", "yes", "checked", "x")
# annotation flags: Hidden, NoView
HIDDEN_FLAGS = 2 | 32


class FilledField(BaseModel):
    field_id: int
    document_id: Optional[int] = None
    type: str
    page: int
    # percentages of the page, origin top-left
    x: float
    y: float
    width: float
    height: float
    value: Any = None
    signature_image: Optional[bytes] = None
    required: bool = True


def is_checked(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in CHECKED_VALUES


def is_empty(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _fit_text(c, text: str, font: str, size: float, max_width: float) -> str:
    if max_width <= 0:
        return ""
    while text and c.stringWidth(text, font, size) > max_width:
        text = text[:-1]
    return text


def _overlay_page(width: float, height: float, fields: Iterable[FilledField]) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    for f in fields:
        x = f.x / 100.0 * width
        w = f.width / 100.0 * width
        h = f.height / 100.0 * height
        top = height - f.y / 100.0 * height
        bottom = top - h
        if f.type in IMAGE_TYPES and f.signature_image:
            c.drawImage(
                ImageReader(BytesIO(f.signature_image)), x, bottom,
                width=w, height=h, mask="auto", preserveAspectRatio=True, anchor="sw",
            )
        elif f.type in IMAGE_TYPES:
            # typed signature
            size = max(6.0, min(h * 0.7, 24.0))
            c.setFont("Helvetica-Oblique", size)
            c.drawString(x + 2, bottom + (h - size) / 2 + size * 0.2,
                         _fit_text(c, str(f.value), "Helvetica-Oblique", size, w - 4))
        elif f.type == "checkbox":
            box = min(w, h)
            c.rect(x, top - box, box, box, stroke=1, fill=0)
            if is_checked(f.value):
                c.line(x, top - box, x + box, top); c.line(x, top, x + box, top - box)
        else:
            size = max(6.0, min(h * 0.6, 12.0))
            c.setFont("Helvetica", size)
            c.drawString(x + 2, bottom + (h - size) / 2 + size * 0.2,
                         _fit_text(c, str(f.value), "Helvetica", size, w - 4))
    c.showPage(); c.save()
    return buf.getvalue()


def _widgets(page) -> list:
    if "/Annots" not in page:
        return []
    return [a for a in page["/Annots"] if a.get_object().get("/Subtype") == "/Widget"]


def _normal_appearance(widget):
    """The widget's /AP /N stream, resolved through /AS for on/off buttons."""
    ap = widget.get("/AP")
    if ap is None:
        return None
    ap = ap.get_object()
    if "/N" not in ap:
        return None
    ref = ap.raw_get("/N")
    normal = ref.get_object()
    if not isinstance(normal, StreamObject):
        state = widget.get("/AS")
        if state is None or state not in normal:
            return None
        ref = normal.raw_get(state)
    return ref


def _burn_appearances(writer: PdfWriter, page) -> int:
    """Draw each visible widget's appearance into the page content."""
    if "/Resources" not in page:
        page[NameObject("/Resources")] = DictionaryObject()
    resources = page["/Resources"].get_object()
    if "/XObject" not in resources:
        resources[NameObject("/XObject")] = DictionaryObject()
    xobjects = resources["/XObject"].get_object()

    ops = []
    for n, annot in enumerate(_widgets(page)):
        widget = annot.get_object()
        if int(widget.get("/F", 0)) & HIDDEN_FLAGS:
            continue
        ref = _normal_appearance(widget)
        if ref is None:
            continue
        stream = ref.get_object()
        if not isinstance(ref, IndirectObject):
            ref = writer._add_object(stream)
        stream[NameObject("/Type")] = NameObject("/XObject")
        stream[NameObject("/Subtype")] = NameObject("/Form")

        llx, lly, urx, ury = (float(v) for v in widget["/Rect"])
        llx, urx = min(llx, urx), max(llx, urx)
        lly, ury = min(lly, ury), max(lly, ury)
        bx0, by0, bx1, by1 = (float(v) for v in stream.get("/BBox", [0, 0, urx - llx, ury - lly]))
        sx = (urx - llx) / ((bx1 - bx0) or 1)
        sy = (ury - lly) / ((by1 - by0) or 1)

        name = f"/FlatWidget{n}"
        while name in xobjects:
            name += "_"
        xobjects[NameObject(name)] = ref
        ops.append(f"q {sx:.4f} 0 0 {sy:.4f} {llx - bx0 * sx:.4f} {lly - by0 * sy:.4f} cm {name} Do Q")

    if ops:
        current = page.get_contents()
        body = current.get_data() if current is not None else b""
        content = DecodedStreamObject()
        content.set_data(b"q\n" + body + b"\nQ\n" + "\n".join(ops).encode() + b"\n")
        page.replace_contents(content)
    return len(ops)


def _flatten_form(writer: PdfWriter) -> bool:
    """Burn widget appearances into their pages, then drop the widgets and the form dictionary.

    True if anything changed.
    """
    changed = False
    for page in writer.pages:
        if _widgets(page):
            _burn_appearances(writer, page)
            changed = True
    if changed:
        writer.remove_annotations(subtypes="/Widget")
    if "/AcroForm" in writer._root_object:
        del writer._root_object["/AcroForm"]
        changed = True
    return changed


def _has_form(reader: PdfReader) -> bool:
    if "/AcroForm" in reader.trailer["/Root"]:
        return True
    return any(_widgets(page) for page in reader.pages)


def flatten_pdf(pdf_bytes: bytes) -> bytes:
    """Make field content permanent. A document with nothing left to flatten comes back unchanged."""
    reader = PdfReader(BytesIO(pdf_bytes))
    if not _has_form(reader):
        return pdf_bytes
    writer = PdfWriter()
    for p in reader.pages:
        writer.add_page(p)
    _flatten_form(writer)
    out = BytesIO(); writer.write(out)
    return out.getvalue()


def apply_fields(original_pdf_bytes: bytes, fields: List[FilledField]) -> bytes:
    """Stamp filled values onto their pages and return the flattened document."""
    reader = PdfReader(BytesIO(original_pdf_bytes))
    writer = PdfWriter()
    for p in reader.pages:
        writer.add_page(p)
    num_pages = len(reader.pages)
    drawable = [f for f in fields if f.signature_image or not is_empty(f.value)]
    # one overlay per page
    for page_no, group in groupby(sorted(drawable, key=lambda f: f.page), key=lambda f: f.page):
        pidx = page_no - 1
        if not 0 <= pidx < num_pages:
            raise ValueError(f"field on page {page_no} but document has {num_pages} page(s)")
        page = writer.pages[pidx]
        width = float(page.mediabox.width); height = float(page.mediabox.height)
        overlay = PdfReader(BytesIO(_overlay_page(width, height, group)))
        page.merge_page(overlay.pages[0])
    _flatten_form(writer)
    out = BytesIO(); writer.write(out)
    return out.getvalue()


def concatenate(pdfs: List[bytes]) -> bytes:
    if len(pdfs) == 1:
        return pdfs[0]
    writer = PdfWriter()
    for data in pdfs:
        for p in PdfReader(BytesIO(data)).pages:
            writer.add_page(p)
    out = BytesIO(); writer.write(out)
    return out.getvalue()


def page_count(pdf_bytes: bytes) -> int:
    return len(PdfReader(BytesIO(pdf_bytes)).pages)
