"""Site content for a portal generation: index.html + portal.json.

Тема и верстка рендерятся снаружи; здесь только минимальная страница,
по которой TESTING узнает сайт (имя портала в <title> и <h1>).
"""
from __future__ import annotations

import hashlib
import html
import json
from typing import Any

from apps.backend.services.embedding_pipeline import section_kind, section_text


def filter_sections(sections: list[dict[str, Any]], enabled: list[str] | None) -> list[dict[str, Any]]:
    """Keep sections whose kind is enabled; empty/None enabled list keeps everything."""
    if not enabled:
        return list(sections)
    allowed = {str(x).strip().lower() for x in enabled if str(x).strip()}
    out = []
    for s in sections:
        label = str(s.get("kind") or s.get("label") or "")
        if section_kind(label) in allowed or label.strip().lower() in allowed:
            out.append(s)
    return out


def _render_section(section: dict[str, Any]) -> str:
    label = html.escape(str(section.get("label") or section.get("kind") or "Section"))
    body = section_text(section)
    paras = "".join(f"<p>{html.escape(line)}</p>" for line in body.split("\n") if line.strip())
    return f'<section data-kind="{html.escape(section_kind(label))}"><h2>{label}</h2>{paras}</section>'


def render_index(name: str, sections: list[dict[str, Any]], *, theme: str | None = None, chat_enabled: bool = True) -> str:
    title = html.escape(name)
    body = "\n".join(_render_section(s) for s in sections)
    chat = '<div id="portal-chat" data-chat="on"></div>' if chat_enabled else ""
    return (
        "<!doctype html>\n"
        f'<html lang="en" data-theme="{html.escape(theme or "default")}">\n'
        f'<head><meta charset="utf-8"><title>{title}</title></head>\n'
        f"<body><h1>{title}</h1>\n{body}\n{chat}</body>\n"
        "</html>\n"
    )


def build_site_files(portal, sections: list[dict[str, Any]]) -> dict[str, bytes]:
    visible = filter_sections(sections, portal.enabled_sections)
    index = render_index(
        portal.name,
        visible,
        theme=portal.theme,
        chat_enabled=portal.chat_enabled(),
    ).encode("utf-8")
    meta = {
        "portal_id": portal.id,
        "slug": portal.slug,
        "name": portal.name,
        "visibility": portal.visibility,
        "sections": [str(s.get("label") or s.get("kind") or "") for s in visible],
        "index_sha256": hashlib.sha256(index).hexdigest(),
    }
    return {
        "index.html": index,
        "portal.json": json.dumps(meta, ensure_ascii=False, sort_keys=True).encode("utf-8"),
    }
