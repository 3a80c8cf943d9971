import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from pulsarr.models import ContentItem, ContentMetadata, Instance, RouterRule, RoutingContext, User
from pulsarr.storage import Database


def make_store(url="sqlite://", rules=(), users=(User(1, "alice"), User(2, "bob"))):
    """In-memory store with radarr 1 (default), 2, 3 and sonarr 1 (default)."""
    store = Database(url)
    store.create_all()
    store.upsert_instance(Instance(1, "radarr", name="Movies", root_folder="/movies", is_default=True))
    store.upsert_instance(Instance(2, "radarr", name="Anime", root_folder="/anime"))
    store.upsert_instance(Instance(3, "radarr", name="4K", root_folder="/movies4k"))
    store.upsert_instance(Instance(1, "sonarr", name="TV", root_folder="/tv", is_default=True))
    for user in users:
        store.upsert_user(user)
    for rule in rules:
        store.upsert_router_rule(rule if isinstance(rule, RouterRule) else RouterRule.from_dict(rule))
    return store


def rule(rule_id, rule_type, instance_id, criteria, **kwargs):
    data = {
        "id": rule_id,
        "name": kwargs.pop("name", f"rule {rule_id}"),
        "type": rule_type,
        "target_type": kwargs.pop("target_type", "radarr"),
        "target_instance_id": instance_id,
        "criteria": criteria,
    }
    data.update(kwargs)
    return RouterRule.from_dict(data)


def movie(title="Akira", key=None, genres=("Anime", "Science Fiction"), metadata=None, guids=None):
    return ContentItem(
        title=title,
        guids=tuple(guids) if guids is not None else (f"tmdb:{key or 149}",),
        genres=tuple(genres),
        metadata=metadata,
    )


def japanese_1988():
    return ContentMetadata(year=1988, original_language="Japanese", certification="R",
                           genres=("Anime", "Science Fiction"))


def movie_context(user_id=1, user_name="alice", item_key=None, **kwargs):
    return RoutingContext(content_type="movie", user_id=user_id, user_name=user_name,
                          item_key=item_key, **kwargs)


BASE_CONFIG = {
    "DATABASE_URL": "sqlite://",
    "DRY_RUN": True,
    "RADARR_INSTANCES": [
        {"id": 1, "name": "Movies", "root_folder": "/movies", "is_default": True},
        {"id": 2, "name": "Anime", "root_folder": "/anime"},
    ],
    "SONARR_INSTANCES": [
        {"id": 1, "name": "TV", "root_folder": "/tv", "is_default": True},
    ],
    "USERS": [{"id": 1, "name": "alice"}, {"id": 2, "name": "bob", "requires_approval": True}],
    "USER_QUOTAS": [{"user_id": 1, "content_type": "movie", "quota_type": "daily", "quota_limit": 3}],
    "ROUTER_RULES": [
        {"id": 1, "name": "Anime", "type": "genre", "target_type": "radarr", "target_instance_id": 2,
         "criteria": {"genres": ["Anime"]}, "order": 80},
        {"id": 2, "name": "Old Japanese", "type": "conditional", "target_type": "radarr",
         "target_instance_id": 2,
         "criteria": {"condition": {"operator": "AND", "conditions": [
             {"field": "language", "operator": "equals", "value": "Japanese"},
             {"field": "year", "operator": "lessThan", "value": 1990},
         ]}}},
    ],
}
