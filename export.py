"""
export.py — Document and share-link adapters for an itinerary.

itinerary_to_pdf() renders the current Itinerary into a PDF (fpdf2);
share_url() and generate_share_slug() produce the public link. Neither owns
planning logic: they only read the aggregate as it stands.
"""

import hashlib
import html
import logging
import re
import secrets
import string
from dataclasses import dataclass
from pathlib import Path

from fpdf import FPDF

import config
from day_planner import format_duration
from schemas import DayPlan, Itinerary

logger = logging.getLogger(__name__)

_SLUG_ALPHABET = string.ascii_lowercase + string.digits

_FONT_CANDIDATES = [
    Path('/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf'),
    Path('/Library/Fonts/Arial Unicode.ttf'),
    Path('/System/Library/Fonts/Supplemental/Arial.ttf'),
    Path('C:/Windows/Fonts/arial.ttf'),
]

_ITEM_LABELS = {
    'drive-leg':         'Drive',
    'point-of-interest': 'Visit',
    'lodging':           'Stay',
    'note':              'Note',
    'photo-op':          'Photo',
}


@dataclass
class ExportOptions:
    include_cover_page:    bool = True
    include_day_summaries: bool = True
    include_turn_by_turn:  bool = False
    include_share_link:    bool = True


# ── Share links ───────────────────────────────────────────────────────────────

def generate_share_slug(title: str) -> str:
    """'My Road Trip!' → 'my-road-trip-k3x9q2' (random suffix keeps slugs unique)."""
    base = re.sub(r'[^\w\s-]', '', (title or '').lower())
    base = re.sub(r'[\s_]+', '-', base).strip('-') or 'trip'
    suffix = ''.join(secrets.choice(_SLUG_ALPHABET) for _ in range(6))
    return f'{base[:80]}-{suffix}'


def share_url(itinerary: Itinerary, base_url: str | None = None) -> str | None:
    if not itinerary.is_public or not itinerary.share_slug:
        return None
    return f'{(base_url or config.PUBLIC_BASE_URL).rstrip("/")}/trip/{itinerary.share_slug}'


# ── PDF ───────────────────────────────────────────────────────────────────────

def _set_font(pdf: FPDF) -> bool:
    """Use a Unicode TTF when one is installed; returns False for the core font."""
    for font_path in _FONT_CANDIDATES:
        if font_path.exists():
            try:
                font_name = f'{font_path.stem}_{hashlib.md5(str(font_path).encode()).hexdigest()[:8]}'
                pdf.add_font(font_name, '', str(font_path))
                pdf.set_font(font_name, size=11)
                return True
            except (OSError, RuntimeError) as exc:
                logger.warning('Could not load font %s: %s', font_path, exc)
                continue
    pdf.set_font('Helvetica', size=11)
    return False


def _strip_tags(text: str) -> str:
    return html.unescape(re.sub(r'<[^>]+>', ' ', text or '')).strip()


def _day_lines(day: DayPlan, number: int, include_summary: bool) -> list[str]:
    header = f'Day {number}' + (f' - {day.date}' if day.date else '')
    lines = [header]
    if include_summary:
        s = day.summary
        lines.append(
            f'  {s.distance_km:.0f} km | {format_duration(s.duration_min)} | '
            f'est. cost {s.estimated_cost:,.0f}'
        )
    for item in day.items:
        label = _ITEM_LABELS.get(item.kind, item.kind)
        parts = [f'  [{label}] {item.title or "(untitled)"}']
        if item.time:
            parts.append(f'({item.time})')
        if item.cost:
            parts.append(f'- {item.cost}')
        lines.append(' '.join(parts))
        if item.details:
            lines.append(f'      {item.details}')
    return lines


def itinerary_to_pdf(itinerary: Itinerary, options: ExportOptions | None = None) -> bytes:
    options = options or ExportOptions()
    pdf = FPDF()
    pdf.set_auto_page_break(auto=True, margin=20)
    pdf.add_page()
    unicode_font = _set_font(pdf)

    def clean(text: str) -> str:
        if unicode_font:
            return text
        text = text.replace('₹', 'Rs. ').replace('—', '-').replace('→', '->')
        return text.encode('latin-1', errors='replace').decode('latin-1')

    def write_line(text: str, height: float = 7) -> None:
        pdf.multi_cell(0, height, clean(text), new_x='LMARGIN', new_y='NEXT')

    route = itinerary.route_summary
    if options.include_cover_page:
        pdf.set_font_size(20)
        write_line(itinerary.title or 'Trip', height=12)
        pdf.set_font_size(11)
        stops = [wp.name or wp.address or 'Unnamed stop' for wp in itinerary.waypoints]
        if stops:
            write_line(' -> '.join(stops))
        if route and route.total_distance_km:
            write_line(
                f'Total: {route.total_distance_km:.0f} km, '
                f'{format_duration(route.total_duration_min or 0)} driving, '
                f'{len(itinerary.days)} day(s)'
            )
        details = itinerary.details
        if details.start_date:
            write_line(f'Dates: {details.start_date} to {details.end_date or "open"}')
        pdf.ln(6)

    for number, day in enumerate(itinerary.days, start=1):
        for line in _day_lines(day, number, options.include_day_summaries):
            write_line(line)
        pdf.ln(3)

    if options.include_turn_by_turn and route and route.steps:
        write_line('Turn-by-turn directions')
        for step in route.steps:
            instruction = _strip_tags(step.get('html_instructions', ''))
            distance = (step.get('distance') or {}).get('text', '')
            if instruction:
                write_line(f'  - {instruction}' + (f' ({distance})' if distance else ''))
        pdf.ln(3)

    link = share_url(itinerary)
    if options.include_share_link and link:
        write_line(f'View online: {link}')

    output = pdf.output()
    logger.info('Exported itinerary %s to PDF (%d day(s))', itinerary.id, len(itinerary.days))
    return bytes(output)
