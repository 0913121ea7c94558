"""
Tests for FeatureStream and QuerySession.

Pipeline behaviour (limits, fail-fast, resource release) is driven through the
in-memory FakeBackend; the end-to-end cases run both real backends over local
GeoParquet files.
"""

import pytest

from ovfeatures.domain.enums import BackendKind, StreamState
from ovfeatures.domain.models import BoundingBox, RegistryResult
from ovfeatures.errors import DecodeError, InvalidArgumentError, UpstreamUnavailableError
from ovfeatures.pipeline.backend import ArrowBackend, BackendContext, DuckDBBackend
from ovfeatures.pipeline.stream import FeatureStream, row_to_feature

from conftest import RELEASE, point_row, write_features

QUERY = (0.0, 0.0, 10.0, 10.0)


def ids(features):
    return [f.id for f in features]


@pytest.fixture
def make_stream(settings, fake_catalog, fake_index, make_backend):
    """Factory returning (stream, backend) wired to the fakes."""
    def _make(files=None, order=None, kind=BackendKind.FULL_STREAM, failing=None):
        backend = make_backend(files, kind=kind, failing=failing)
        fake_index.files_for_bbox.return_value = order if order is not None else list(files or {})
        stream = FeatureStream(catalog=fake_catalog, context=BackendContext(settings, backend=backend),
                               settings=settings, spatial_index=fake_index)
        return stream, backend
    return _make


class TestRowToFeature:
    """Test row_to_feature."""

    def test_properties_exclude_geometry_and_bbox(self):
        feature = row_to_feature(point_row("a", 1.0, 2.0, name="Cafe"))
        assert feature.id == "a"
        assert feature.geometry == {"type": "Point", "coordinates": [1.0, 2.0]}
        assert feature.properties == {"id": "a", "name": "Cafe"}
        assert feature.bbox == pytest.approx((0.999, 1.999, 1.001, 2.001))

    def test_undecodable_geometry(self):
        assert row_to_feature(point_row("a", 1.0, 2.0, geometry=b"junk")) is None

    def test_fallback_bbox(self):
        row = point_row("a", 1.0, 2.0)
        row["bbox"] = None
        feature = row_to_feature(row, fallback_bbox=BoundingBox(xmin=0, ymin=0, xmax=5, ymax=5))
        assert feature.bbox == (0.0, 0.0, 5.0, 5.0)


class TestStreamByBbox:
    """Test stream_by_bbox ordering, limits and filtering."""

    def test_streams_files_in_index_order(self, make_stream):
        stream, _ = make_stream({
            "f1": [point_row("a", 1, 1), point_row("b", 2, 2)],
            "f2": [point_row("c", 3, 3)],
        })
        assert ids(stream.stream_by_bbox("place", QUERY)) == ["a", "b", "c"]

    def test_passes_type_bbox_and_release_to_index(self, make_stream, fake_index):
        stream, _ = make_stream({"f1": [point_row("a", 1, 1)]})
        list(stream.stream_by_bbox("building", QUERY))

        type_name, bbox, release = fake_index.files_for_bbox.call_args.args
        assert type_name == "building"
        assert bbox.as_tuple() == QUERY
        assert release == RELEASE

    def test_limit_stops_opening_files(self, make_stream):
        stream, backend = make_stream({
            "f1": [point_row("a", 1, 1), point_row("b", 2, 2)],
            "f2": [point_row("c", 3, 3), point_row("d", 4, 4)],
            "f3": [point_row("e", 5, 5)],
        })
        session = stream.stream_by_bbox("place", QUERY, limit=3)

        assert ids(session) == ["a", "b", "c"]
        assert backend.opened == ["f1", "f2"]
        assert backend.closed == ["f1", "f2"]
        assert session.files_opened == 2
        assert session.state == StreamState.DONE

    def test_limit_exactly_filled_by_file(self, make_stream):
        stream, backend = make_stream({
            "f1": [point_row("a", 1, 1), point_row("b", 2, 2)],
            "f2": [point_row("c", 3, 3)],
        })
        assert ids(stream.stream_by_bbox("place", QUERY, limit=2)) == ["a", "b"]
        assert backend.opened == ["f1"]

    def test_remaining_limit_passed_to_backend(self, make_stream):
        stream, backend = make_stream({
            "f1": [point_row("a", 1, 1)],
            "f2": [point_row("b", 2, 2), point_row("c", 3, 3)],
        }, kind=BackendKind.PUSHDOWN)
        list(stream.stream_by_bbox("place", QUERY, limit=2))

        assert backend.bbox_limits == [2, 1]

    def test_limit_zero_does_no_io(self, make_stream, fake_catalog, fake_index):
        stream, backend = make_stream({"f1": [point_row("a", 1, 1)]})
        session = stream.stream_by_bbox("place", QUERY, limit=0)

        assert list(session) == []
        assert session.state == StreamState.DONE
        fake_catalog.get_latest_release.assert_not_called()
        fake_index.files_for_bbox.assert_not_called()
        assert backend.opened == []

    def test_no_files(self, make_stream):
        stream, backend = make_stream({})
        session = stream.stream_by_bbox("place", QUERY)

        assert list(session) == []
        assert session.state == StreamState.DONE
        assert backend.opened == []

    def test_full_stream_filters_client_side(self, make_stream):
        outside = point_row("far", 50, 50)
        no_bbox = point_row("nobbox", 1, 1)
        no_bbox["bbox"] = None
        stream, _ = make_stream({"f1": [point_row("a", 1, 1), outside, no_bbox, point_row("b", 2, 2)]})

        assert ids(stream.stream_by_bbox("place", QUERY)) == ["a", "b"]

    def test_touching_rows_are_excluded(self, make_stream):
        touching = point_row("edge", 0, 0)
        touching["bbox"] = {"xmin": 10.0, "xmax": 11.0, "ymin": 5.0, "ymax": 6.0}
        stream, _ = make_stream({"f1": [touching, point_row("a", 1, 1)]})

        assert ids(stream.stream_by_bbox("place", QUERY)) == ["a"]

    def test_pushdown_rows_are_not_refiltered(self, make_stream):
        stream, backend = make_stream({"f1": [point_row("a", 1, 1), point_row("far", 50, 50)]},
                                      kind=BackendKind.PUSHDOWN)
        assert ids(stream.stream_by_bbox("place", QUERY)) == ["a"]

    def test_undecodable_rows_skipped_and_not_counted(self, make_stream):
        stream, _ = make_stream({"f1": [
            point_row("a", 1, 1),
            point_row("bad", 2, 2, geometry=b"not wkb"),
            point_row("b", 3, 3),
            point_row("c", 4, 4),
        ]})
        session = stream.stream_by_bbox("place", QUERY, limit=2)

        assert ids(session) == ["a", "b"]
        assert session.features_yielded == 2

    def test_read_by_bbox_all(self, make_stream):
        stream, _ = make_stream({"f1": [point_row("a", 1, 1), point_row("b", 2, 2)]})
        assert ids(stream.read_by_bbox_all("place", QUERY, limit=1)) == ["a"]

    def test_get_files_in_bbox(self, make_stream, fake_index):
        stream, _ = make_stream({"f1": []}, order=["f1", "f2"])
        assert stream.get_files_in_bbox("place", QUERY) == ["f1", "f2"]
        assert stream.get_files_in_bbox("place", QUERY, release="2025-01-01.0") == ["f1", "f2"]
        assert fake_index.files_for_bbox.call_args.args[2] == "2025-01-01.0"


class TestValidation:
    """Invalid arguments are rejected before any I/O."""

    @pytest.mark.parametrize("bbox", [
        (10, 0, 0, 10),
        (0, 10, 10, 0),
        (5, 5, 5, 6),
        (-181, 0, 0, 10),
        (0, -91, 10, 0),
        (0, 0, 181, 10),
        (0, 0, float("nan"), 10),
        (0, 0, 10),
        ("a", 0, 10, 10),
    ])
    def test_invalid_bbox(self, make_stream, fake_catalog, fake_index, bbox):
        stream, backend = make_stream({"f1": [point_row("a", 1, 1)]})

        with pytest.raises(InvalidArgumentError):
            stream.stream_by_bbox("place", bbox)
        fake_catalog.get_latest_release.assert_not_called()
        fake_index.files_for_bbox.assert_not_called()
        assert backend.opened == []

    @pytest.mark.parametrize("limit", [-1, 1.5, "10", True])
    def test_invalid_limit(self, make_stream, limit):
        stream, _ = make_stream({})
        with pytest.raises(InvalidArgumentError, match="Limit"):
            stream.stream_by_bbox("place", QUERY, limit=limit)

    def test_unknown_type(self, make_stream):
        stream, _ = make_stream({})
        with pytest.raises(InvalidArgumentError, match="Unknown Overture type"):
            stream.stream_by_bbox("castle", QUERY)

    def test_accepts_bounding_box(self, make_stream):
        stream, _ = make_stream({"f1": [point_row("a", 1, 1)]})
        bbox = BoundingBox(xmin=0, ymin=0, xmax=10, ymax=10)
        assert ids(stream.stream_by_bbox("place", bbox)) == ["a"]


class TestSessionLifecycle:
    """Test session states, fail-fast and resource release."""

    def test_states(self, make_stream):
        stream, _ = make_stream({"f1": [point_row("a", 1, 1), point_row("b", 2, 2)]})
        session = stream.stream_by_bbox("place", QUERY)
        assert session.state == StreamState.INIT

        next(session)
        assert session.state == StreamState.STREAMING
        assert session.release == RELEASE
        assert session.files == ["f1"]

        list(session)
        assert session.state == StreamState.DONE

    def test_early_break_releases_file(self, make_stream):
        stream, backend = make_stream({
            "f1": [point_row("a", 1, 1), point_row("b", 2, 2)],
            "f2": [point_row("c", 3, 3)],
        })
        with stream.stream_by_bbox("place", QUERY) as session:
            for feature in session:
                break

        assert feature.id == "a"
        assert backend.opened == ["f1"]
        assert backend.closed == ["f1"]
        assert session.state == StreamState.DONE

    def test_close_before_iterating(self, make_stream, fake_catalog):
        stream, backend = make_stream({"f1": [point_row("a", 1, 1)]})
        session = stream.stream_by_bbox("place", QUERY)
        session.close()

        assert session.state == StreamState.DONE
        assert backend.opened == []
        assert list(session) == []
        fake_catalog.get_latest_release.assert_not_called()

    def test_close_after_done_keeps_state(self, make_stream):
        stream, _ = make_stream({"f1": [point_row("a", 1, 1)]})
        session = stream.stream_by_bbox("place", QUERY)
        list(session)
        session.close()
        assert session.state == StreamState.DONE

    def test_failure_mid_stream(self, make_stream):
        stream, backend = make_stream(
            {"f1": [point_row("a", 1, 1)], "f2": [point_row("b", 2, 2)], "f3": [point_row("c", 3, 3)]},
            failing={"f2": UpstreamUnavailableError("Failed to read parquet file", url="f2", status=503)},
        )
        session = stream.stream_by_bbox("place", QUERY)
        received = []

        with pytest.raises(UpstreamUnavailableError):
            for feature in session:
                received.append(feature.id)

        assert received == ["a"]
        assert session.state == StreamState.FAILED
        assert backend.opened == ["f1", "f2"]
        assert list(session) == []

    def test_catalog_failure(self, make_stream, fake_catalog):
        fake_catalog.get_latest_release.side_effect = UpstreamUnavailableError("STAC down")
        stream, _ = make_stream({"f1": [point_row("a", 1, 1)]})
        session = stream.stream_by_bbox("place", QUERY)

        with pytest.raises(UpstreamUnavailableError):
            next(session)
        assert session.state == StreamState.FAILED

    def test_close_stream_closes_context(self, make_stream):
        stream, backend = make_stream({})
        stream.close()
        assert backend.was_closed


GERS_ID = "5a6b7c8d-1234-4abc-9def-0123456789ab"
FEATURE_URL = f"https://overturemaps-us-west-2.s3.us-west-2.amazonaws.com/release/{RELEASE}/place.parquet"


@pytest.fixture
def registry_result():
    return RegistryResult(
        filepath=f"overturemaps-us-west-2/release/{RELEASE}/place.parquet",
        bbox=BoundingBox(xmin=0, ymin=0, xmax=2, ymax=2),
        version=1,
    )


class TestGetById:
    """Test get_by_id with precomputed registry results."""

    def test_found(self, make_stream, registry_result):
        stream, backend = make_stream({FEATURE_URL: [point_row(GERS_ID, 1, 1)]})
        feature = stream.get_by_id(GERS_ID.upper(), registry_result=registry_result)

        assert feature.id == GERS_ID
        assert feature.geometry["coordinates"] == [1.0, 1.0]
        assert backend.id_calls == [(FEATURE_URL, GERS_ID, None)]

    def test_registry_bbox_used_when_row_has_none(self, make_stream, registry_result):
        row = point_row(GERS_ID, 1, 1)
        row["bbox"] = None
        stream, _ = make_stream({FEATURE_URL: [row]})

        assert stream.get_by_id(GERS_ID, registry_result=registry_result).bbox == (0.0, 0.0, 2.0, 2.0)

    def test_row_missing_from_file(self, make_stream, registry_result):
        stream, _ = make_stream({FEATURE_URL: []})
        assert stream.get_by_id(GERS_ID, registry_result=registry_result) is None

    def test_not_in_registry(self, make_stream):
        stream, backend = make_stream({})
        assert stream.get_by_id(GERS_ID) is None

    def test_undecodable_geometry(self, make_stream, registry_result):
        stream, _ = make_stream({FEATURE_URL: [point_row(GERS_ID, 1, 1, geometry=b"\x00")]})

        with pytest.raises(DecodeError) as excinfo:
            stream.get_by_id(GERS_ID, registry_result=registry_result)
        assert excinfo.value.feature_id == GERS_ID

    def test_invalid_id(self, make_stream, fake_catalog):
        stream, backend = make_stream({})
        with pytest.raises(InvalidArgumentError):
            stream.get_by_id("nope")
        fake_catalog.get_catalog.assert_not_called()
        assert backend.id_calls == []


# =============================================================================
# End to end over local files
# =============================================================================

@pytest.fixture(params=["duckdb", "arrow"])
def real_context(request, settings):
    if request.param == "duckdb":
        backend = DuckDBBackend(settings, extensions=())
    else:
        backend = ArrowBackend(settings)
    context = BackendContext(settings, backend=backend)
    yield context
    context.close()


class TestEndToEnd:
    """Both backends yield the same features for the same query."""

    def test_bbox_stream(self, tmp_path, settings, fake_catalog, fake_index, real_context):
        first = write_features(tmp_path / "part-0.parquet", [
            point_row("a", 1, 1), point_row("far", 50, 50), point_row("b", 2, 2),
        ])
        second = write_features(tmp_path / "part-1.parquet", [
            point_row("bad", 3, 3, geometry=b"junk"), point_row("c", 4, 4), point_row("d", 5, 5),
        ])
        fake_index.files_for_bbox.return_value = [first, second]
        stream = FeatureStream(catalog=fake_catalog, context=real_context, settings=settings,
                               spatial_index=fake_index)

        assert ids(stream.stream_by_bbox("place", QUERY)) == ["a", "b", "c", "d"]
        assert ids(stream.stream_by_bbox("place", QUERY, limit=3)) == ["a", "b", "c"]

    def test_get_by_id(self, tmp_path, settings, fake_catalog, real_context):
        path = write_features(tmp_path / "place.parquet", [point_row("other", 0, 0),
                                                           point_row(GERS_ID, 7, 8)])
        stream = FeatureStream(catalog=fake_catalog, context=real_context, settings=settings)
        stream.registry.feature_url = lambda result: path

        feature = stream.get_by_id(GERS_ID, registry_result=RegistryResult(filepath=path))

        assert feature.geometry == {"type": "Point", "coordinates": [7.0, 8.0]}
        assert feature.properties["name"] == GERS_ID


class TestPushdownTopUp:
    """Undecodable rows under a pushed-down limit do not shorten the result."""

    def test_rereads_file_past_skipped_rows(self, make_stream):
        stream, backend = make_stream({"f1": [
            point_row("bad", 1, 1, geometry=b"junk"),
            point_row("a", 2, 2),
            point_row("b", 3, 3),
            point_row("c", 4, 4),
        ]}, kind=BackendKind.PUSHDOWN)

        assert ids(stream.stream_by_bbox("place", QUERY, limit=2)) == ["a", "b"]
        assert backend.bbox_limits == [2, 3]
        assert backend.closed == ["f1", "f1"]

    def test_no_reread_when_file_exhausted(self, make_stream):
        stream, backend = make_stream({
            "f1": [point_row("bad", 1, 1, geometry=b"junk"), point_row("a", 2, 2)],
            "f2": [point_row("b", 3, 3)],
        }, kind=BackendKind.PUSHDOWN)

        assert ids(stream.stream_by_bbox("place", QUERY, limit=5)) == ["a", "b"]
        assert backend.bbox_limits == [5, 4]

    def test_full_stream_passes_no_limit(self, make_stream):
        stream, backend = make_stream({"f1": [point_row("a", 1, 1), point_row("b", 2, 2)]})
        list(stream.stream_by_bbox("place", QUERY, limit=1))

        assert backend.bbox_limits == [None]
