# backend/accesshub/templates.py
import hashlib
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker

from . import crud, schemas
from .errors import ExtractionError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def extract_template(dump: bytes, threshold: int, page_size: int = 256, page_count: int = 2) -> bytes:
    """
    Recover a template from a raw sensor capture.

    The dump is cut into consecutive `page_size` windows (a trailing partial
    window is ignored). A window counts as a template page when more than
    `threshold` of its bytes are non-zero; the first `page_count` such
    windows, concatenated, are the template.
    """
    pages = []
    for offset in range(0, len(dump) - page_size + 1, page_size):
        window = bytes(dump[offset:offset + page_size])
        non_zero = page_size - window.count(0)
        if non_zero > threshold:
            logger.debug(f"Template page at offset {offset} ({non_zero} non-zero bytes)")
            pages.append(window)
            if len(pages) == page_count:
                break

    if len(pages) < page_count:
        raise ExtractionError(
            f"found {len(pages)} template page(s) in {len(dump)} bytes, need {page_count} "
            f"(threshold {threshold} non-zero bytes per {page_size}-byte window)"
        )

    template = b"".join(pages)
    if len(template) != page_size * page_count:
        raise ExtractionError(f"recovered template is {len(template)} bytes, expected {page_size * page_count}")
    return template


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class TemplateStore:
    """Fixed-size template buffers, keyed by id and matched by exact bytes."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        threshold: int,
        page_size: int = 256,
        page_count: int = 2,
    ):
        self.session_factory = session_factory
        self.threshold = threshold
        self.page_size = page_size
        self.page_count = page_count

    @property
    def template_size(self) -> int:
        return self.page_size * self.page_count

    async def upload(self, data: bytes, template_id: str | None = None) -> schemas.TemplateInfo:
        if len(data) != self.template_size:
            raise ValidationError(
                "Invalid template",
                [{"field": "body", "message": f"template must be exactly {self.template_size} bytes, got {len(data)}"}],
            )
        template_id = (template_id or "").strip() or uuid.uuid4().hex
        digest = _digest(data)
        async with self.session_factory() as db:
            template = await crud.save_template(db, template_id, bytes(data), digest, datetime.now(timezone.utc))
        logger.info(f"Stored template '{template_id}' ({digest[:12]})")
        return schemas.TemplateInfo(
            template_id=template.template_id, size=len(data), digest=digest, created_at=template.created_at
        )

    async def extract_and_store(self, dump: bytes, template_id: str | None = None) -> schemas.TemplateInfo:
        template = extract_template(dump, self.threshold, self.page_size, self.page_count)
        return await self.upload(template, template_id)

    async def fetch(self, template_id: str) -> bytes:
        async with self.session_factory() as db:
            template = await crud.get_template(db, template_id)
        if template is None:
            raise NotFoundError(f"template '{template_id}' not found")
        return template.data

    async def match(self, data: bytes) -> str | None:
        async with self.session_factory() as db:
            candidates = await crud.get_templates_by_digest(db, _digest(data))
        for template in candidates:
            if template.data == data:
                return template.template_id
        return None
