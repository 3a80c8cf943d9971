import os
import sys
import unittest
from unittest.mock import MagicMock, patch

import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from pulsarr.acquisition import ArrAcquirer
from pulsarr.arr_api import InstanceManager, RadarrClient, SonarrClient
from pulsarr.errors import LookupFailed
from pulsarr.models import ContentItem, Instance, RoutingDecision
from tests.support import make_store, movie


def response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


class TestArrClient(unittest.TestCase):
    def test_quality_profile_by_name(self):
        session = MagicMock()
        session.request.return_value = response([{"id": 4, "name": "HD-1080p"}, {"id": 6, "name": "Ultra-HD"}])
        client = RadarrClient("http://radarr:7878/", "key", session=session)
        self.assertEqual(client.resolve_quality_profile("ultra-hd"), 6)
        self.assertEqual(client.resolve_quality_profile(3), 3)
        url = session.request.call_args[0][1]
        self.assertEqual(url, "http://radarr:7878/api/v3/qualityprofile")
        with self.assertRaises(LookupFailed):
            client.resolve_quality_profile("Missing")

    def test_tags_are_created_when_unknown(self):
        session = MagicMock()
        session.request.side_effect = [
            response([{"id": 1, "label": "anime"}]),
            response({"id": 7, "label": "kids"}),
        ]
        client = SonarrClient("http://sonarr:8989", "key", session=session)
        self.assertEqual(client.resolve_tags([3, "Anime", "kids"]), [3, 1, 7])
        method, url = session.request.call_args[0][:2]
        self.assertEqual((method, url), ("post", "http://sonarr:8989/api/v3/tag"))

    @patch("logging.error")
    def test_http_errors_are_logged_and_raised(self, mock_error):
        session = MagicMock()
        session.request.side_effect = requests.ConnectionError("refused")
        client = RadarrClient("http://radarr:7878", "key", session=session)
        with self.assertRaises(requests.ConnectionError):
            client.get_tags()
        mock_error.assert_called_once()

    def test_series_lookup_by_tvdb(self):
        session = MagicMock()
        session.request.return_value = response([{"title": "Cowboy Bebop", "year": 1998,
                                                  "originalLanguage": {"name": "Japanese"},
                                                  "seasons": [{"seasonNumber": 0}, {"seasonNumber": 1}]}])
        client = SonarrClient("http://sonarr:8989", "key", session=session)
        result = client.lookup_by_tvdb(76885)
        self.assertEqual(result.to_metadata().original_language, "Japanese")
        self.assertEqual(result.to_metadata().seasons, (0, 1))
        self.assertEqual(session.request.call_args[1]["params"], {"term": "tvdb:76885"})


class TestArrAcquirer(unittest.TestCase):
    def setUp(self):
        self.store = make_store()
        self.store.upsert_instance(Instance(2, "radarr", name="Anime", base_url="http://radarr:7878",
                                            api_key="key", quality_profile="HD-1080p", root_folder="/anime",
                                            tags=["anime"]))
        self.instances = InstanceManager(self.store, session=MagicMock())
        self.client = MagicMock()
        self.instances.client_for = MagicMock(return_value=self.client)
        self.decision = RoutingDecision(instance_id=2, instance_type="radarr", root_folder="/anime/override")

    @patch("logging.warning")
    def test_dry_run_sends_nothing(self, mock_warning):
        acquirer = ArrAcquirer(self.instances, dry_run=True)
        self.assertTrue(acquirer.acquire(movie(key="603"), self.decision))
        self.instances.client_for.assert_not_called()
        self.assertIn("[DRY RUN]", mock_warning.call_args[0][0])

    def test_movie_payload_falls_back_to_instance_settings(self):
        self.client.resolve_quality_profile.return_value = 4
        self.client.resolve_tags.return_value = [1]
        acquirer = ArrAcquirer(self.instances, dry_run=False)
        self.assertTrue(acquirer.acquire(movie(title="The Matrix", key="603"), self.decision))

        self.client.resolve_quality_profile.assert_called_once_with("HD-1080p")
        self.client.resolve_tags.assert_called_once_with(["anime"])
        payload = self.client.add_movie.call_args[0][0]
        self.assertEqual(payload["tmdbId"], 603)
        self.assertEqual(payload["qualityProfileId"], 4)
        self.assertEqual(payload["rootFolderPath"], "/anime/override")
        self.assertEqual(payload["minimumAvailability"], "released")
        self.assertTrue(payload["addOptions"]["searchForMovie"])

    def test_series_payload(self):
        acquirer = ArrAcquirer(self.instances, dry_run=False)
        show = ContentItem(title="Cowboy Bebop", guids=("tvdb:76885",))
        decision = RoutingDecision(instance_id=1, instance_type="sonarr", season_monitoring="future",
                                   series_type="anime", search_on_add=False)
        instance = self.store.get_instance(1, "sonarr")
        payload = acquirer.build_payload(show, decision, instance, 5, [])
        self.assertEqual(payload["tvdbId"], 76885)
        self.assertEqual(payload["seriesType"], "anime")
        self.assertEqual(payload["addOptions"], {"monitor": "future", "searchForMissingEpisodes": False})
        self.assertEqual(payload["rootFolderPath"], "/tv")

    @patch("logging.error")
    def test_missing_guid_fails(self, mock_error):
        acquirer = ArrAcquirer(self.instances, dry_run=False)
        self.assertFalse(acquirer.acquire(ContentItem(title="No ids"), self.decision))
        self.client.add_movie.assert_not_called()

    @patch("logging.error")
    def test_api_failure_fails(self, mock_error):
        self.client.add_movie.side_effect = requests.HTTPError("400 Bad Request")
        acquirer = ArrAcquirer(self.instances, dry_run=False)
        self.assertFalse(acquirer.acquire(movie(key="603"), self.decision))
        mock_error.assert_called()

    @patch("logging.error")
    def test_unknown_instance_fails(self, mock_error):
        acquirer = ArrAcquirer(self.instances, dry_run=True)
        self.assertFalse(acquirer.acquire(movie(), RoutingDecision(instance_id=9, instance_type="radarr")))


if __name__ == "__main__":
    unittest.main()
