"""Client for the external business-location scraping function."""
import logging
import uuid
from typing import Any, Dict, List, Optional

import requests

from .db import Store, now_iso
from .errors import BackendUnavailableError, ValidationError
from .models import BusinessLocation

logger = logging.getLogger(__name__)


def _clean_url(url: Any) -> str:
    text = str(url or '').strip()
    if not text:
        raise ValidationError("url is required")
    if not text.lower().startswith(('http://', 'https://')):
        raise ValidationError("url must start with http:// or https://")
    return text


def call_scraper(url: str, settings: Dict[str, Any]) -> Dict[str, Any]:
    endpoint = settings.get('SCRAPER_FUNCTION_URL')
    if not endpoint:
        raise BackendUnavailableError("scraping function is not configured")
    try:
        resp = requests.post(endpoint, json={'url': url}, timeout=settings.get('SCRAPER_TIMEOUT', 30))
    except requests.RequestException as e:
        logger.error("scraper request failed: %s", e)
        raise BackendUnavailableError(f"scraping function unavailable: {e}") from e

    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        raise BackendUnavailableError(f"scraping function returned an invalid response ({resp.status_code})")
    if resp.status_code >= 400 or payload.get('error'):
        message = str(payload.get('error') or f"scraping failed ({resp.status_code})")
        if 400 <= resp.status_code < 500:
            raise ValidationError(message)
        raise BackendUnavailableError(message)
    return payload


def scrape_business(store: Store, url: Any, settings: Dict[str, Any]) -> BusinessLocation:
    """Scrape a business website and store the extracted location."""
    target = _clean_url(url)
    data = call_scraper(target, settings)

    name = str(data.get('name') or '').strip()
    address = str(data.get('address') or '').strip()
    if not name or not address:
        raise ValidationError("could not find a business name and address on that page")
    try:
        latitude = float(data.get('latitude'))
        longitude = float(data.get('longitude'))
    except (TypeError, ValueError):
        raise ValidationError("could not geocode the business address")

    row = store.insert('business_locations', {
        'id': str(uuid.uuid4()),
        'name': name,
        'address': address,
        'summary': data.get('summary') or data.get('description'),
        'latitude': latitude,
        'longitude': longitude,
        'website_url': data.get('website_url') or target,
        'created_at': now_iso(),
    })
    logger.info("stored business location %s from %s", row['id'], target)
    return BusinessLocation(**row)


def list_business_locations(store: Store, query: Optional[str] = None) -> List[BusinessLocation]:
    locations = [BusinessLocation(**r) for r in store.select('business_locations', order_by=('-created_at',))]
    if query:
        needle = query.strip().lower()
        locations = [loc for loc in locations if needle in loc.name.lower() or needle in loc.address.lower()]
    return locations
