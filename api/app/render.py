# PDF stamping for form instances: reportlab draws an overlay per page and
# pypdf merges it onto the template page.

import logging
import math
from io import BytesIO
from typing import Dict, List, Optional, Sequence, Tuple

from pypdf import PdfReader, PdfWriter
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from .fields import FieldPlacement, Template
from .generation import clean_text, is_truthy

logger = logging.getLogger(__name__)

FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
PAD = 2.0
DEFAULT_BOX = (220.0, 28.0)
DEFAULT_TEXTAREA_H = 60.0
DEFAULT_SIGNATURE = (180.0, 60.0)


def _box(field: FieldPlacement, page_height: float) -> Tuple[float, float, float, float]:
    if field.rect is not None:
        r = field.rect
        # top-left origin -> PDF bottom-left
        return r.x, page_height - r.y - r.h, r.w, r.h
    w = field.w if field.w is not None else DEFAULT_BOX[0]
    h = field.h if field.h is not None else DEFAULT_BOX[1]
    return field.x or 0.0, field.y or 0.0, w, h


def _pages_are_one_based(placements: Sequence[FieldPlacement]) -> bool:
    pages = [p.page for p in placements]
    return bool(pages) and 0 not in pages and min(pages) >= 1


def wrap_text(text: str, size: float, max_width: float, font: str = FONT) -> List[str]:
    words = clean_text(text).split()
    lines: List[str] = []
    line = ""
    for word in words:
        candidate = f"{line} {word}" if line else word
        if stringWidth(candidate, font, size) <= max_width or not line:
            line = candidate
        else:
            lines.append(line)
            line = word
    if line:
        lines.append(line)
    return lines


def _text_ops(field: FieldPlacement, text: str, x: float, y: float, w: float, h: float) -> List[dict]:
    size = field.font_size or 11.0
    if field.type == "textarea":
        box_h = h or DEFAULT_TEXTAREA_H
        line_height = size * 1.2
        max_lines = max(1, math.floor((box_h - PAD * 2) / line_height))
        lines = wrap_text(text, size, max(0.0, (w or DEFAULT_BOX[0]) - PAD * 2))[:max_lines]
        ops = []
        ty = y + box_h - PAD - size
        for line in lines:
            ops.append({"type": "text", "x": x + PAD, "y": ty, "text": line, "size": size})
            ty -= line_height
        return ops
    ty = y + max(PAD, ((h or DEFAULT_BOX[1]) - size) / 2)
    return [{"type": "text", "x": x + PAD, "y": ty, "text": text, "size": size}]


def _checkbox_op(field: FieldPlacement, x: float, y: float, w: float, h: float) -> dict:
    size = min(max(field.font_size or 14.0, 10.0), 18.0)
    mark = "X"
    tx = x + max(2.0, (w - stringWidth(mark, FONT_BOLD, size)) / 2)
    ty = y + max(2.0, (h - size) / 2)
    return {"type": "text", "x": tx, "y": ty, "text": mark, "size": size, "bold": True}


def layout_operations(
    template: Template,
    filled_data: Dict[str, object],
    page_sizes: Sequence[Tuple[float, float]],
    has_signature: bool,
) -> Dict[int, List[dict]]:
    """Draw operations per page index, in PDF coordinates."""
    placements = list(template.fields)
    if template.signature_field is not None:
        placements.append(template.signature_field)
    one_based = _pages_are_one_based(placements)
    draw_map: Dict[int, List[dict]] = {}

    for field in placements:
        field_id = (field.id or "").strip()
        if not field_id:
            continue
        pidx = max(0, field.page - 1) if one_based else max(0, field.page)
        if pidx >= len(page_sizes):
            continue
        x, y, w, h = _box(field, page_sizes[pidx][1])

        if field.type == "signature" or field is template.signature_field:
            if not has_signature or field is not template.signature_field:
                continue
            draw_map.setdefault(pidx, []).append(
                {"type": "signature", "x": x, "y": y, "w": w or DEFAULT_SIGNATURE[0], "h": h or DEFAULT_SIGNATURE[1]}
            )
            continue

        raw = filled_data.get(field_id)
        text = clean_text(raw)
        if not text:
            continue
        if field.type == "checkbox":
            if is_truthy(raw):
                draw_map.setdefault(pidx, []).append(_checkbox_op(field, x, y, w, h))
            continue
        draw_map.setdefault(pidx, []).extend(_text_ops(field, text, x, y, w, h))
    return draw_map


def _overlay_page(width, height, draw_ops, signature: Optional[ImageReader]):
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    for op in draw_ops:
        t = op.get("type")
        if t == "text":
            c.setFont(FONT_BOLD if op.get("bold") else FONT, op.get("size", 11))
            c.drawString(op["x"], op["y"], op["text"])
        elif t == "signature" and signature is not None:
            c.drawImage(signature, op["x"], op["y"], width=op["w"], height=op["h"], mask="auto")
    c.showPage()
    c.save()
    return buf.getvalue()


def _load_signature(png: Optional[bytes]) -> Optional[ImageReader]:
    if not png:
        return None
    try:
        image = ImageReader(BytesIO(png))
        image.getSize()
    except Exception as exc:
        # render the form without it
        logger.warning("ignoring unreadable signature image: %s", exc)
        return None
    return image


def render_pdf(
    template_pdf_bytes: bytes,
    template: Template,
    filled_data: Dict[str, object],
    signature_png: Optional[bytes] = None,
) -> bytes:
    reader = PdfReader(BytesIO(template_pdf_bytes))
    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)
    sizes = [(float(p.mediabox.width), float(p.mediabox.height)) for p in reader.pages]
    signature = _load_signature(signature_png)

    draw_map = layout_operations(template, filled_data or {}, sizes, signature is not None)
    for pidx, ops in draw_map.items():
        width, height = sizes[pidx]
        overlay_reader = PdfReader(BytesIO(_overlay_page(width, height, ops, signature)))
        writer.pages[pidx].merge_page(overlay_reader.pages[0])

    out = BytesIO()
    writer.write(out)
    return out.getvalue()
