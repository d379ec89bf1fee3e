"""PDF rendering for generated ebooks.

Generates A4 PDFs from the approved description and generated content using
WeasyPrint. Includes cover page, table of contents, introduction, chapters,
conclusion and a page-number footer.
"""

import html
import logging
import re
import unicodedata
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

import markdown

from src.ebook.errors import RendererUnavailableError
from src.ebook.schemas import EbookContent, EbookDescription

logger = logging.getLogger(__name__)

MARKDOWN_EXTENSIONS = ["tables", "fenced_code", "toc"]


class DocumentRenderer(Protocol):
    """Structured content in, binary document out."""

    def render(self, title: str, description: EbookDescription, content: EbookContent) -> bytes: ...


class ArtifactStore(Protocol):
    def save(self, filename: str, data: bytes) -> str: ...


class WeasyPrintRenderer:
    """DocumentRenderer producing PDF bytes through WeasyPrint."""

    def render(self, title: str, description: EbookDescription, content: EbookContent) -> bytes:
        try:
            from weasyprint import HTML
        except (ImportError, OSError) as e:
            # OSError: weasyprint installed but its native libraries (pango) are missing
            raise RendererUnavailableError(
                f"PDF rendering is not available in this environment: {e}"
            ) from e

        html_str = build_ebook_html(title, description, content)
        pdf_bytes = HTML(string=html_str).write_pdf()
        logger.info(
            f"Rendered PDF for '{title}': {len(pdf_bytes)} bytes, "
            f"{len(content.chapters)} chapters"
        )
        return pdf_bytes


class LocalArtifactStore:
    """Writes rendered files to a directory and returns their public URL."""

    def __init__(self, output_dir: str | Path, public_base_url: str = "/generated"):
        self.output_dir = Path(output_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def save(self, filename: str, data: bytes) -> str:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / filename
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)
        logger.info(f"Saved artifact {path} ({len(data)} bytes)")
        return f"{self.public_base_url}/{filename}"


def slugify(text: str, max_length: int = 60) -> str:
    """ASCII slug for file names: 'Marketing Digital Básico' -> 'marketing-digital-basico'."""
    normalized = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", normalized.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "ebook"


def build_pdf_filename(title: str, ebook_id: str, unique: Optional[str] = None) -> str:
    """Collision-resistant file name: <slug>-<ebook_id>-<uuid hex>.pdf"""
    return f"{slugify(title)}-{ebook_id}-{unique or uuid.uuid4().hex}.pdf"


def _css_string(text: str) -> str:
    """Escape text for a double-quoted CSS string inside a <style> block."""
    return (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("<", "\\3C ")
        .replace(">", "\\3E ")
        .replace("\n", " ")
    )


def _md(text: str) -> str:
    return markdown.markdown(text or "", extensions=MARKDOWN_EXTENSIONS)


def build_ebook_html(
    title: str,
    description: EbookDescription,
    content: EbookContent,
    generated_on: Optional[datetime] = None,
) -> str:
    """Build the complete HTML document for PDF rendering."""
    now = (generated_on or datetime.now()).strftime("%B %d, %Y")
    safe_title = html.escape(title)
    css_title = _css_string(title)

    toc_items = '<li><a href="#introduction">Introduction</a></li>\n'
    for chapter in content.chapters:
        toc_items += (
            f'<li><a href="#chapter-{chapter.chapter_number}">'
            f"Chapter {chapter.chapter_number}: {html.escape(chapter.title)}"
            f'<span class="toc-detail">{chapter.word_count:,} words</span></a></li>\n'
        )
    toc_items += '<li><a href="#conclusion">Conclusion</a></li>\n'

    chapters_html = ""
    for chapter in content.chapters:
        key_points = "".join(f"<li>{html.escape(p)}</li>" for p in chapter.key_points)
        chapters_html += f'''
        <section class="chapter" id="chapter-{chapter.chapter_number}">
            <h2 class="chapter-title">
                <span class="chapter-number">{chapter.chapter_number}</span>
                {html.escape(chapter.title)}
            </h2>
            <div class="prose-content">
                {_md(chapter.content)}
            </div>
            {f'<aside class="key-points"><h4>Key points</h4><ul>{key_points}</ul></aside>' if key_points else ''}
        </section>
        '''

    objectives = "".join(f"<li>{html.escape(o)}</li>" for o in description.objectives)

    return f'''<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>{safe_title}</title>
    <style>
        @page {{
            size: A4;
            margin: 2cm 2.5cm;
            @top-center {{
                content: "{css_title}";
                font-family: 'Inter', sans-serif;
                font-size: 8pt;
                color: #94a3b8;
            }}
            @bottom-center {{
                content: counter(page);
                font-family: 'Inter', sans-serif;
                font-size: 8pt;
                color: #94a3b8;
            }}
        }}
        @page:first {{
            @top-center {{ content: none; }}
            @bottom-center {{ content: none; }}
        }}

        * {{ box-sizing: border-box; margin: 0; padding: 0; }}

        body {{
            font-family: 'Crimson Pro', 'Georgia', serif;
            font-size: 11pt;
            line-height: 1.6;
            color: #1e293b;
        }}

        .cover {{
            page-break-after: always;
            min-height: 80vh;
            text-align: center;
            padding-top: 30%;
        }}
        .cover h1 {{
            font-size: 28pt;
            color: #0f172a;
            margin-bottom: 0.5em;
            line-height: 1.2;
        }}
        .cover .subtitle {{
            font-size: 13pt;
            color: #475569;
            margin-bottom: 2em;
        }}
        .cover .meta {{
            font-family: 'Inter', sans-serif;
            font-size: 10pt;
            color: #64748b;
        }}

        .toc {{ page-break-after: always; }}
        .toc h2, .front h2 {{
            font-family: 'Inter', sans-serif;
            font-size: 16pt;
            color: #0f172a;
            margin-bottom: 1em;
            border-bottom: 2px solid #e2e8f0;
            padding-bottom: 0.5em;
        }}
        .toc ol {{ list-style: none; }}
        .toc li {{
            padding: 0.5em 0;
            border-bottom: 1px solid #f1f5f9;
        }}
        .toc a {{ text-decoration: none; color: #1e293b; }}
        .toc .toc-detail {{
            float: right;
            font-family: 'Inter', sans-serif;
            font-size: 8pt;
            color: #94a3b8;
        }}

        .front, .chapter {{ page-break-before: always; }}
        .chapter-title {{
            font-family: 'Inter', sans-serif;
            font-size: 18pt;
            color: #0f172a;
            margin-bottom: 1em;
            border-bottom: 3px solid #3b82f6;
            padding-bottom: 0.3em;
        }}
        .chapter-number {{
            display: inline-block;
            background: #3b82f6;
            color: white;
            width: 1.8em;
            height: 1.8em;
            line-height: 1.8em;
            text-align: center;
            border-radius: 50%;
            font-size: 12pt;
            margin-right: 0.4em;
        }}

        .prose-content {{ font-size: 10.5pt; line-height: 1.65; }}
        .prose-content h1, .prose-content h2, .prose-content h3 {{
            font-family: 'Inter', sans-serif;
            color: #0f172a;
            margin-top: 1em;
            margin-bottom: 0.4em;
        }}
        .prose-content p {{ margin-bottom: 0.6em; text-align: justify; }}
        .prose-content ul, .prose-content ol {{ margin-left: 1.5em; margin-bottom: 0.6em; }}
        .prose-content blockquote {{
            border-left: 3px solid #cbd5e1;
            padding-left: 1em;
            color: #475569;
            font-style: italic;
        }}
        .prose-content table {{ width: 100%; border-collapse: collapse; font-size: 9pt; }}
        .prose-content th, .prose-content td {{ border: 1px solid #e2e8f0; padding: 0.4em 0.6em; }}

        .key-points {{
            margin-top: 1.5em;
            padding: 1em 1.5em;
            background: #f8fafc;
            border-left: 4px solid #3b82f6;
            font-size: 10pt;
        }}
        .key-points h4 {{
            font-family: 'Inter', sans-serif;
            color: #3b82f6;
            text-transform: uppercase;
            letter-spacing: 0.05em;
            margin-bottom: 0.5em;
        }}
        .key-points ul {{ margin-left: 1.2em; }}
    </style>
</head>
<body>

<div class="cover">
    <h1>{safe_title}</h1>
    <div class="subtitle">{html.escape(description.target_audience)}</div>
    <div class="meta">
        <p>{content.metadata.total_chapters} chapters &middot; {content.metadata.total_pages} pages</p>
        <p>{html.escape(description.estimated_read_time)}</p>
        <p>Generated {now}</p>
    </div>
</div>

<div class="toc">
    <h2>Contents</h2>
    <ol>
        {toc_items}
    </ol>
</div>

<section class="front" id="introduction">
    <h2>Introduction</h2>
    <div class="prose-content">
        {_md(content.introduction)}
    </div>
    {f'<aside class="key-points"><h4>What you will learn</h4><ul>{objectives}</ul></aside>' if objectives else ''}
</section>

{chapters_html}

<section class="front" id="conclusion">
    <h2>Conclusion</h2>
    <div class="prose-content">
        {_md(content.conclusion)}
    </div>
</section>

</body>
</html>'''
