# defer_app/engine/classifier.py
import logging
import re
from typing import Optional

from defer_app.engine.models import TemplateTag

logger = logging.getLogger(__name__)

_DATE_SEGMENT = re.compile(r"/\d{4}/\d{2}/")


def classify(path: str) -> TemplateTag:
    """
    Map a storefront URL path to its Shopify template tag.

    Order matters: the first matching branch wins, unrecognized paths fall back to `page`.
    """
    if path in ("/", "/index"):
        return TemplateTag.INDEX
    if path.startswith("/products/"):
        return TemplateTag.PRODUCT
    if path.startswith("/collections/"):
        return TemplateTag.COLLECTION
    if path.startswith("/pages/"):
        return TemplateTag.CONTACT if path == "/pages/contact" else TemplateTag.PAGE
    if path.startswith("/blogs/") or _DATE_SEGMENT.search(path):
        return TemplateTag.ARTICLE
    if path.startswith("/cart"):
        return TemplateTag.CART
    return TemplateTag.PAGE


class TemplateClassifier:
    """Classifies the current page once and keeps the answer for the rest of the page load."""

    def __init__(self, location):
        self._location = location
        self._tag: Optional[TemplateTag] = None

    @property
    def tag(self) -> TemplateTag:
        if self._tag is None:
            try:
                path = self._location.pathname
                self._tag = classify(path)
                logger.debug(f"[defer] detected template {self._tag.value} from {path}")
            except Exception as e:
                logger.error(f"[defer] template detection failed: {e}")
                self._tag = TemplateTag.PAGE
        return self._tag
