import logging
from typing import Optional

import requests

from .arr_api import InstanceManager
from .errors import LookupFailed
from .models import ContentItem, Instance, RoutingDecision


class ArrAcquirer:
    """
    Issues the "add to instance" call for one RoutingDecision.

    Values the decision leaves unset fall back to the target instance's
    own configuration. With ``dry_run`` the payload is logged and
    nothing is sent.
    """

    def __init__(self, instances: InstanceManager, dry_run: bool = True):
        self.instances = instances
        self.dry_run = dry_run

    def build_payload(self, item: ContentItem, decision: RoutingDecision, instance: Instance,
                      quality_profile_id: Optional[int], tag_ids) -> Optional[dict]:
        search = decision.search_on_add if decision.search_on_add is not None else instance.search_on_add
        root_folder = decision.root_folder or instance.root_folder
        if instance.type == 'radarr':
            tmdb_id = item.guid_id('tmdb')
            if tmdb_id is None:
                return None
            return {
                'title': item.title,
                'tmdbId': tmdb_id,
                'qualityProfileId': quality_profile_id,
                'rootFolderPath': root_folder,
                'monitored': True,
                'minimumAvailability': decision.minimum_availability or instance.minimum_availability,
                'tags': tag_ids,
                'addOptions': {'searchForMovie': bool(search)},
            }
        tvdb_id = item.guid_id('tvdb')
        if tvdb_id is None:
            return None
        return {
            'title': item.title,
            'tvdbId': tvdb_id,
            'qualityProfileId': quality_profile_id,
            'rootFolderPath': root_folder,
            'monitored': True,
            'seasonFolder': True,
            'seriesType': decision.series_type or instance.series_type,
            'tags': tag_ids,
            'addOptions': {
                'monitor': decision.season_monitoring or instance.season_monitoring,
                'searchForMissingEpisodes': bool(search),
            },
        }

    def acquire(self, item: ContentItem, decision: RoutingDecision, extra: Optional[dict] = None) -> bool:
        extra = extra or {}
        instance = self.instances.get_instance(decision.instance_id, decision.instance_type)
        if instance is None or not instance.enabled:
            logging.error(f"Cannot add '{item.title}': instance {decision.instance_id} is missing or disabled",
                          extra=extra)
            return False

        profile = decision.quality_profile if decision.quality_profile is not None else instance.quality_profile
        tags = list(decision.tags or instance.tags)

        if self.dry_run:
            logging.warning(
                "[DRY RUN] Would add '%s' to %s '%s' (profile=%s root='%s' tags=%s)",
                item.title, instance.type, instance.name, profile,
                decision.root_folder or instance.root_folder, tags, extra=extra,
            )
            return True

        client = self.instances.client_for(instance)
        try:
            profile_id = client.resolve_quality_profile(profile)
            tag_ids = client.resolve_tags(tags)
            payload = self.build_payload(item, decision, instance, profile_id, tag_ids)
            if payload is None:
                logging.error(f"Cannot add '{item.title}': no {'tmdb' if instance.type == 'radarr' else 'tvdb'} GUID",
                              extra=extra)
                return False
            if instance.type == 'radarr':
                client.add_movie(payload)
            else:
                client.add_series(payload)
        except (requests.RequestException, LookupFailed) as e:
            logging.error(f"Failed to add '{item.title}' to {instance.name}: {e}", extra=extra)
            return False

        logging.info(f"Added '{item.title}' to {instance.type} '{instance.name}'", extra=extra)
        return True
