# defer_app/services/categorizer.py
import re
from typing import Any, Dict

# (category, markers) checked in order after the Shopify-specific buckets
THIRD_PARTY_SERVICES = [
    ("Google Analytics/Tags", ("google", "gtag", "analytics", "gtm")),
    ("Facebook/Meta", ("facebook", "fbevents", "connect.facebook")),
    ("TikTok Analytics", ("tiktok", "ttq")),
    ("Intercom", ("intercom",)),
    ("Microsoft Clarity", ("clarity.ms", "microsoft")),
    ("Hotjar", ("hotjar",)),
    ("Zendesk/Chat", ("zendesk", "zopim")),
    ("Klaviyo", ("klaviyo",)),
    ("Gorgias", ("gorgias",)),
    ("Privy", ("privy",)),
    ("Yotpo", ("yotpo",)),
    ("Judge.me", ("judge.me", "judgeme")),
    ("Loyalty/Rewards", ("loyalty", "smile.io")),
    ("Google reCAPTCHA", ("recaptcha", "gstatic.com")),
    ("Stripe Payments", ("stripe",)),
    ("PayPal", ("paypal", "paypalobjects")),
    ("Amazon Pay", ("amazon", "amazonpay")),
    ("Afterpay/Clearpay", ("afterpay", "clearpay")),
    ("Klarna", ("klarna",)),
    ("Affirm", ("affirm",)),
    ("Sezzle", ("sezzle",)),
    ("Shop Pay", ("shopify-pay", "shop-pay")),
]

SHOPIFY_CORE_MARKERS = (
    "shopifycloud", ".checkout.shopify.com", ".myshopify.com", "storefront-renderer",
    "web-pixels-manager", "checkout-web", "shopify-boomerang", "trekkie", "features", "payment-sheet",
)
SHOPIFY_APP_MARKERS = ("/apps/", "shopify-app-bridge", "app-bridge", "pos-ui-extensions")
THEME_FILE_MARKERS = ("theme.js", "sections.js", "global.js", "product-form.js", "cart.js")

CATEGORY_GUIDANCE = {
    "Shopify Core": {
        "defaultAction": "review",
        "confidence": 3,
        "notes": "Core Shopify scripts - defer only if high waste and non-critical",
    },
    "Shopify App": {
        "defaultAction": "defer",
        "confidence": 7,
        "notes": "App scripts are usually safe to defer, especially with high waste",
    },
    "Shopify Theme": {
        "defaultAction": "defer",
        "confidence": 6,
        "notes": "Theme scripts can often be deferred if they have unused code",
    },
    "Google Analytics/Tags": {
        "defaultAction": "defer",
        "confidence": 9,
        "notes": "Analytics scripts are ideal candidates for deferring",
    },
    "Facebook/Meta": {
        "defaultAction": "defer",
        "confidence": 9,
        "notes": "Social media tracking can be safely deferred",
    },
    "Third-Party": {
        "defaultAction": "defer",
        "confidence": 8,
        "notes": "Most third-party scripts are safe to defer",
    },
}


def categorize_script(url: str, shop: str = "") -> str:
    u = url.lower()

    if any(m in u for m in SHOPIFY_CORE_MARKERS):
        return "Shopify Core"

    if any(m in u for m in SHOPIFY_APP_MARKERS) or re.search(r"/proxy/.*\.js", u):
        return "Shopify App"

    if (
        "/cdn/shop/t/" in u
        or re.search(r"/assets/.*\.js(\?|$)", u)
        or any(m in u for m in THEME_FILE_MARKERS)
        or (shop and shop.lower() in u and "/assets/" in u)
    ):
        return "Shopify Theme"

    if "cdn.shopify.com" in u or "cdn.shopifycloud.com" in u:
        return "Shopify CDN"

    for category, markers in THIRD_PARTY_SERVICES:
        if any(m in u for m in markers):
            return category

    return "Third-Party"


def defer_priority(wasted_percent: float, wasted_bytes: int, category: str = "") -> str:
    """Rank how worthwhile deferring is: 'high', 'medium' or 'low'."""
    if category == "Shopify Core":
        # never high for core files
        if wasted_percent > 70 or wasted_bytes > 200000:
            return "medium"
        return "low"

    if wasted_percent > 50 or wasted_bytes > 100000:
        return "high"
    if wasted_percent > 30 or wasted_bytes > 50000:
        return "medium"
    return "low"


def defer_safety(url: str, category: str, wasted_percent: float = 0) -> Dict[str, Any]:
    u = url.lower()

    if any(m in u for m in ("checkout", "payment", "trekkie", "web-pixels-manager")):
        return {"safe": False, "reason": "Critical for checkout/payments", "confidence": 9}

    if any(k in category for k in ("Google", "Facebook", "TikTok")) or "analytics" in u or "gtag" in u:
        return {"safe": True, "reason": "Analytics/marketing script", "confidence": 9}

    if category == "Shopify App" and wasted_percent > 40:
        return {"safe": True, "reason": "High waste app script", "confidence": 8}

    if category == "Shopify Theme" and wasted_percent > 50:
        return {"safe": True, "reason": "High waste theme script", "confidence": 7}

    return {"safe": True, "reason": "Standard defer candidate", "confidence": 6}


def category_guidance(category: str) -> Dict[str, Any]:
    return CATEGORY_GUIDANCE.get(category, {
        "defaultAction": "review",
        "confidence": 5,
        "notes": "Review manually for defer safety",
    })
