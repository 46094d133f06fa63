"""Tests for geocoding providers and the fallback chain."""
from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest

from core.exceptions import (
    ConfigurationError,
    GeocodeError,
    GeocodeTimeoutError,
    MissingCredentialsError,
    RateLimitError,
)
from services.geocoders import (
    AddressQuery,
    CensusGeocoder,
    Geocoder,
    GeocoderChain,
    GoogleGeocoder,
    NominatimGeocoder,
    build_geocoder_chain,
    clean_street,
    validate_geocode_input,
)

QUERY = AddressQuery(address="100 Main St - B", city="Chicago", state="IL", zip="60601")


def client_returning(*responses):
    client = MagicMock()
    client.get.side_effect = list(responses)
    return client


class StubProvider(Geocoder):
    """Provider that returns or raises a fixed result."""

    def __init__(self, name, result=None, error=None):
        super().__init__(timeout=1.0, client=MagicMock())
        self.name = name
        self.result = result
        self.error = error
        self.calls = 0

    def geocode(self, query):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


class TestAddressPreparation:

    def test_clean_street_strips_unit_letter(self):
        assert clean_street("123 Main St - B  ") == "123 Main St"
        assert clean_street("123   Main St") == "123 Main St"

    def test_one_line_omits_placeholder_zip(self):
        assert QUERY.one_line() == "100 Main St, Chicago, IL, 60601"
        assert AddressQuery("1 A St", "Reno", "NV", "00000").one_line() == "1 A St, Reno, NV"
        assert AddressQuery("1 A St", "Reno", "NV", None).one_line() == "1 A St, Reno, NV"

    def test_variations_most_specific_first(self):
        assert QUERY.variations() == [
            "100 Main St, Chicago, IL, USA",
            "100 Main St, Chicago, IL",
            "Chicago, IL, USA",
        ]

    @pytest.mark.parametrize(
        "address,city,state,reason",
        [
            (None, "Chicago", "IL", "missing or unknown address"),
            ("Unknown", "Chicago", "IL", "missing or unknown address"),
            ("1 A St", "", "IL", "missing or unknown city"),
            ("1 A St", "unknown", "IL", "missing or unknown city"),
            ("1 A St", "Chicago", None, "missing state"),
            ("1A", "Chicago", "IL", "address too short"),
            ("9" * 201, "Chicago", "IL", "address too long"),
            ("Vacant lot behind 4th St", "Chicago", "IL", "address is a description (vacant lot)"),
            ("Parcel-based location", "Chicago", "IL", "address is a description (parcel-based location)"),
        ],
    )
    def test_unusable_input_is_skipped(self, address, city, state, reason):
        assert validate_geocode_input(address, city, state) == reason

    def test_usable_input(self):
        assert validate_geocode_input("100 Main St", "Chicago", "IL") is None


class TestCensusGeocoder:

    def test_match(self):
        body = {"result": {"addressMatches": [{"coordinates": {"x": -87.63, "y": 41.88}}]}}
        client = client_returning(httpx.Response(200, json=body))

        coords = CensusGeocoder(timeout=2.0, client=client).geocode(QUERY)

        assert coords == (41.88, -87.63)
        params = client.get.call_args.kwargs["params"]
        assert params["address"] == "100 Main St, Chicago, IL, 60601"
        assert params["benchmark"] == "Public_AR_Current"

    def test_no_match(self):
        client = client_returning(httpx.Response(200, json={"result": {"addressMatches": []}}))
        assert CensusGeocoder(timeout=2.0, client=client).geocode(QUERY) is None

    def test_timeout_is_reported_as_timeout(self):
        client = MagicMock()
        client.get.side_effect = httpx.ReadTimeout("slow")
        with pytest.raises(GeocodeTimeoutError):
            CensusGeocoder(timeout=2.0, client=client).geocode(QUERY)

    def test_client_error_status(self):
        client = client_returning(httpx.Response(400, text="bad"))
        with pytest.raises(GeocodeError):
            CensusGeocoder(timeout=2.0, client=client).geocode(QUERY)

    def test_server_error_is_retried(self):
        body = {"result": {"addressMatches": [{"coordinates": {"x": -90.0, "y": 30.0}}]}}
        client = client_returning(httpx.Response(503), httpx.Response(200, json=body))

        coords = CensusGeocoder(timeout=2.0, client=client).geocode(QUERY)

        assert coords == (30.0, -90.0)
        assert client.get.call_count == 2


class TestNominatimGeocoder:

    def _geocoder(self, client):
        return NominatimGeocoder(
            timeout=2.0,
            user_agent="tests",
            delay_seconds=0,
            variation_delay_seconds=0,
            client=client,
        )

    def test_falls_through_variations(self):
        client = client_returning(
            httpx.Response(200, json=[]),
            httpx.Response(200, json=[{"lat": "41.9", "lon": "-87.6"}]),
        )

        coords = self._geocoder(client).geocode(QUERY)

        assert coords == (41.9, -87.6)
        queries = [c.kwargs["params"]["q"] for c in client.get.call_args_list]
        assert queries == ["100 Main St, Chicago, IL, USA", "100 Main St, Chicago, IL"]
        assert client.get.call_args.kwargs["headers"]["User-Agent"] == "tests"

    def test_zero_coordinates_are_not_a_match(self):
        client = client_returning(*[httpx.Response(200, json=[{"lat": "0", "lon": "0"}])] * 3)
        assert self._geocoder(client).geocode(QUERY) is None

    def test_rate_limit(self):
        client = client_returning(httpx.Response(429))
        with pytest.raises(RateLimitError):
            self._geocoder(client).geocode(QUERY)

    def test_other_http_errors_mean_no_match(self):
        client = client_returning(*[httpx.Response(500)] * 3)
        assert self._geocoder(client).geocode(QUERY) is None

    def test_throttle_spaces_requests(self, monkeypatch):
        sleeps = []
        monkeypatch.setattr("services.geocoders.time.sleep", sleeps.append)
        geocoder = NominatimGeocoder(timeout=2.0, user_agent="tests", delay_seconds=5,
                                     variation_delay_seconds=0, client=MagicMock())
        geocoder._throttle()
        geocoder._throttle()
        assert len(sleeps) >= 1
        assert 0 < sleeps[-1] <= 5


class TestGoogleGeocoder:

    def test_requires_key(self):
        with pytest.raises(MissingCredentialsError):
            GoogleGeocoder(api_key=None, timeout=2.0)

    def test_ok(self):
        body = {"status": "OK", "results": [{"geometry": {"location": {"lat": 32.7, "lng": -96.8}}}]}
        client = client_returning(httpx.Response(200, json=body))
        assert GoogleGeocoder("key", 2.0, client=client).geocode(QUERY) == (32.7, -96.8)

    def test_zero_results(self):
        client = client_returning(httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []}))
        assert GoogleGeocoder("key", 2.0, client=client).geocode(QUERY) is None

    def test_quota(self):
        client = client_returning(httpx.Response(200, json={"status": "OVER_QUERY_LIMIT"}))
        with pytest.raises(RateLimitError):
            GoogleGeocoder("key", 2.0, client=client).geocode(QUERY)

    def test_denied(self):
        body = {"status": "REQUEST_DENIED", "error_message": "bad key"}
        client = client_returning(httpx.Response(200, json=body))
        with pytest.raises(GeocodeError, match="bad key"):
            GoogleGeocoder("key", 2.0, client=client).geocode(QUERY)


class TestGeocoderChain:

    def test_first_match_wins(self):
        first = StubProvider("census", result=None)
        second = StubProvider("nominatim", result=(1.5, 2.5))
        third = StubProvider("google", result=(9.0, 9.0))

        outcome = GeocoderChain([first, second, third]).resolve(7, "1 A St", "Reno", "NV", "89501")

        assert outcome.resolved
        assert (outcome.latitude, outcome.longitude, outcome.provider) == (1.5, 2.5, "nominatim")
        assert third.calls == 0

    def test_errors_fall_through(self):
        chain = GeocoderChain([
            StubProvider("census", error=GeocodeError("boom")),
            StubProvider("nominatim", error=RateLimitError("slow down")),
        ])

        outcome = chain.resolve(7, "1 A St", "Reno", "NV")

        assert outcome.status == "failed"
        assert not outcome.timed_out
        assert "census: boom" in outcome.reason

    def test_timed_out_only_when_every_provider_timed_out(self):
        timeout = GeocodeTimeoutError("slow")
        all_slow = GeocoderChain([StubProvider("a", error=timeout), StubProvider("b", error=timeout)])
        one_slow = GeocoderChain([StubProvider("a", error=timeout), StubProvider("b", result=None)])

        assert all_slow.resolve(1, "1 A St", "Reno", "NV").timed_out is True
        assert one_slow.resolve(1, "1 A St", "Reno", "NV").timed_out is False

    def test_invalid_input_never_reaches_providers(self):
        provider = StubProvider("census", result=(1.0, 1.0))

        outcome = GeocoderChain([provider]).resolve(3, "Illegal dumping", "Reno", "NV")

        assert outcome.status == "skipped"
        assert provider.calls == 0

    def test_requires_a_provider(self):
        with pytest.raises(ConfigurationError):
            GeocoderChain([])


class TestBuildChain:

    def test_order_follows_settings(self, make_settings):
        chain = build_geocoder_chain(make_settings(geocoder_providers="nominatim,census"))
        assert chain.names == ["nominatim", "census"]

    def test_google_dropped_unless_enabled(self, make_settings):
        chain = build_geocoder_chain(make_settings(geocoder_providers="census,google"))
        assert chain.names == ["census"]

    def test_google_included_when_enabled(self, make_settings):
        settings = make_settings(
            geocoder_providers="census,google", enable_google=True, google_maps_api_key="k"
        )
        assert build_geocoder_chain(settings).names == ["census", "google"]
