"""Ebook Pipeline - asynchronous ebook generation service.

This service turns an ebook title into a finished PDF in three queued stages:
- Description (overview + chapter outline), reviewed and approved by a human
- Content (introduction, chapters, conclusion)
- PDF rendering
"""

__version__ = "0.1.0"
