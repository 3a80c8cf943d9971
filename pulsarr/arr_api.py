import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import LookupFailed
from .models import ContentItem, ContentMetadata, Instance, season_numbers


def build_session() -> requests.Session:
    sess = requests.Session()
    retry = Retry(
        total=5,
        connect=3,
        read=3,
        backoff_factor=0.5,
        status_forcelist=[429, 502, 503, 504],
        allowed_methods=frozenset(["GET", "PUT", "POST"])
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=100, pool_maxsize=100)
    sess.mount('http://', adapter)
    sess.mount('https://', adapter)
    return sess


def _language_name(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        return data.get("name") or None
    return data or None


@dataclass
class MovieLookup:
    title: str
    tmdbId: Optional[int] = None
    year: Optional[int] = None
    originalLanguage: Optional[str] = None
    certification: Optional[str] = None
    genres: List[str] = field(default_factory=list)

    @staticmethod
    def from_dict(data: dict) -> "MovieLookup":
        return MovieLookup(
            title=data.get("title", ""),
            tmdbId=data.get("tmdbId"),
            year=data.get("year") or None,
            originalLanguage=_language_name(data.get("originalLanguage")),
            certification=data.get("certification") or None,
            genres=list(data.get("genres") or []),
        )

    def to_metadata(self) -> ContentMetadata:
        return ContentMetadata(
            year=self.year,
            original_language=self.originalLanguage,
            certification=self.certification,
            genres=tuple(self.genres),
        )


@dataclass
class SeriesLookup:
    title: str
    tvdbId: Optional[int] = None
    year: Optional[int] = None
    originalLanguage: Optional[str] = None
    certification: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    seasons: List[int] = field(default_factory=list)

    @staticmethod
    def from_dict(data: dict) -> "SeriesLookup":
        return SeriesLookup(
            title=data.get("title", ""),
            tvdbId=data.get("tvdbId"),
            year=data.get("year") or None,
            originalLanguage=_language_name(data.get("originalLanguage")),
            certification=data.get("certification") or None,
            genres=list(data.get("genres") or []),
            seasons=list(season_numbers(data.get("seasons"))),
        )

    def to_metadata(self) -> ContentMetadata:
        return ContentMetadata(
            year=self.year,
            original_language=self.originalLanguage,
            certification=self.certification,
            genres=tuple(self.genres),
            seasons=tuple(self.seasons),
        )


class ArrClient:
    """Shared request plumbing for the Radarr and Sonarr v3 APIs."""

    service = "arr"

    def __init__(self, base_url: str, api_key: str, timeout: float = 5.0,
                 session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/") + "/api/v3"
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or build_session()

    def _request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{endpoint}"
        headers = kwargs.pop("headers", {})
        headers.setdefault("accept", "application/json")
        headers.setdefault("X-Api-Key", self.api_key)
        if method in {"post", "put"}:
            headers.setdefault("Content-Type", "application/json")
        timeout = kwargs.pop("timeout", self.timeout)
        try:
            response = self.session.request(method, url, headers=headers, timeout=timeout, **kwargs)
            response.raise_for_status()
        except requests.RequestException as exc:
            logging.error("%s API error during %s %s: %s", self.service.capitalize(), method.upper(), url, exc)
            raise
        return response

    def get_quality_profiles(self) -> List[dict]:
        return self._request("get", "/qualityprofile").json() or []

    def get_tags(self) -> List[dict]:
        return self._request("get", "/tag").json() or []

    def create_tag(self, label: str) -> dict:
        return self._request("post", "/tag", json={"label": label}).json()

    def resolve_quality_profile(self, profile: Union[int, str, None]) -> Optional[int]:
        """Accept a profile id or name; names are looked up on the instance."""
        if profile is None:
            return None
        if isinstance(profile, int) or str(profile).isdigit():
            return int(profile)
        wanted = str(profile).strip().casefold()
        for entry in self.get_quality_profiles():
            if str(entry.get("name", "")).strip().casefold() == wanted:
                return entry.get("id")
        raise LookupFailed(f"Quality profile '{profile}' not found on {self.service}")

    def resolve_tags(self, tags: List[Union[int, str]]) -> List[int]:
        """Map tag labels to ids, creating labels the instance does not know yet."""
        ids: List[int] = []
        labels = [t for t in tags if not isinstance(t, int) and not str(t).isdigit()]
        ids.extend(int(t) for t in tags if isinstance(t, int) or str(t).isdigit())
        if not labels:
            return ids
        known = {str(t.get("label", "")).casefold(): t.get("id") for t in self.get_tags()}
        for label in labels:
            tag_id = known.get(str(label).casefold())
            if tag_id is None:
                tag_id = self.create_tag(str(label)).get("id")
            ids.append(tag_id)
        return ids


class RadarrClient(ArrClient):
    service = "radarr"

    def lookup_by_tmdb(self, tmdb_id: int, timeout: Optional[float] = None) -> Optional[MovieLookup]:
        resp = self._request("get", "/movie/lookup/tmdb", params={"tmdbId": tmdb_id},
                             timeout=timeout or self.timeout)
        data = resp.json()
        if isinstance(data, list):
            data = data[0] if data else None
        return MovieLookup.from_dict(data) if data else None

    def add_movie(self, payload: dict) -> dict:
        return self._request("post", "/movie", json=payload).json()


class SonarrClient(ArrClient):
    service = "sonarr"

    def lookup_by_tvdb(self, tvdb_id: int, timeout: Optional[float] = None) -> Optional[SeriesLookup]:
        resp = self._request("get", "/series/lookup", params={"term": f"tvdb:{tvdb_id}"},
                             timeout=timeout or self.timeout)
        results = resp.json() or []
        return SeriesLookup.from_dict(results[0]) if results else None

    def add_series(self, payload: dict) -> dict:
        return self._request("post", "/series", json=payload).json()


class InstanceManager:
    """Builds and caches one API client per configured instance."""

    def __init__(self, store, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.store = store
        self.timeout = timeout
        self.session = session or build_session()
        self._clients: Dict[Tuple[str, int], ArrClient] = {}

    def get_instance(self, instance_id: int, instance_type: Optional[str] = None) -> Optional[Instance]:
        return self.store.get_instance(instance_id, instance_type)

    def get_default_instance(self, instance_type: str) -> Optional[Instance]:
        return self.store.get_default_instance(instance_type)

    def client_for(self, instance: Instance) -> ArrClient:
        client = self._clients.get((instance.type, instance.id))
        if client is None:
            cls = RadarrClient if instance.type == "radarr" else SonarrClient
            client = cls(instance.base_url, instance.api_key, timeout=self.timeout, session=self.session)
            self._clients[(instance.type, instance.id)] = client
        return client

    def lookup_client(self, instance_type: str) -> Optional[ArrClient]:
        """Client for the default (or first enabled) instance of a type, used for metadata lookups."""
        instance = self.get_default_instance(instance_type)
        if instance is None:
            candidates = [i for i in self.store.get_instances(instance_type) if i.enabled]
            instance = candidates[0] if candidates else None
        if instance is None or not instance.base_url:
            return None
        return self.client_for(instance)


class MetadataLookup:
    """
    Resolve an item's GUID to year, language, certification, genres
    and (for shows) season numbers.

    Movies are looked up by ``tmdb:`` GUID on Radarr, shows by ``tvdb:``
    GUID on Sonarr. Every failure path returns None.
    """

    def __init__(self, instances: InstanceManager, timeout: float = 5.0):
        self.instances = instances
        self.timeout = timeout

    def lookup(self, item: ContentItem, content_type: str) -> Optional[ContentMetadata]:
        if content_type == "movie":
            ext_id = item.guid_id("tmdb")
            client = self.instances.lookup_client("radarr")
        else:
            ext_id = item.guid_id("tvdb")
            client = self.instances.lookup_client("sonarr")

        if ext_id is None:
            logging.debug(f"No usable GUID for lookup of '{item.title}'")
            return None
        if client is None:
            logging.debug(f"No {content_type} instance available for lookup of '{item.title}'")
            return None

        try:
            if content_type == "movie":
                result = client.lookup_by_tmdb(ext_id, timeout=self.timeout)
            else:
                result = client.lookup_by_tvdb(ext_id, timeout=self.timeout)
        except (requests.RequestException, ValueError) as e:
            logging.error(f"Metadata lookup failed for '{item.title}': {e}")
            return None

        if result is None:
            logging.warning(f"Metadata lookup returned nothing for '{item.title}'")
            return None
        return result.to_metadata()

    def enrich(self, item: ContentItem, content_type: str) -> ContentItem:
        """Return a copy of ``item`` carrying looked-up metadata, or ``item`` unchanged."""
        metadata = self.lookup(item, content_type)
        if metadata is None:
            return item
        if not metadata.genres and item.genres:
            metadata = replace(metadata, genres=item.genres)
        return item.with_metadata(metadata)
