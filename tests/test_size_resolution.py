import pytest

from conftest import logged_messages, make_document, png_bytes
from damsync.providers.imageshop import client as client_module
from damsync.providers.imageshop.errors import DegenerateGeometryError
from damsync.providers.imageshop.models import ApiError, Rendition, SizeSpec
from damsync.providers.imageshop.sizes import compute_box, ratios_match
from damsync.providers.imageshop.store import META_PERMALINKS


def _original(width: int, height: int) -> Rendition:
    return Rendition(VersionName="Original", IsOriginal=True, Width=width, Height=height)


def test_compute_box_fills_missing_side_from_original_ratio():
    assert compute_box(800, 0, False, _original(4000, 3000)) == (800, 600)
    assert compute_box(0, 600, False, _original(4000, 3000)) == (800, 600)


def test_compute_box_fits_box_inside_original_ratio():
    assert compute_box(300, 300, False, _original(4000, 3000)) == (300, 225)
    assert compute_box(1024, 1024, False, _original(3000, 4000)) == (768, 1024)


def test_compute_box_clamps_to_original():
    assert compute_box(5000, 5000, False, _original(4000, 3000)) == (4000, 3000)
    assert compute_box(5000, 0, False, _original(4000, 3000)) == (4000, 3000)


def test_compute_box_without_original():
    assert compute_box(800, 0, False, None) is None
    assert compute_box(800, 600, False, None) == (800, 600)


def test_compute_box_zero_request_is_unresolvable():
    assert compute_box(0, 0, False, _original(4000, 3000)) is None


def test_compute_box_degenerate_original_raises():
    with pytest.raises(DegenerateGeometryError):
        compute_box(800, 600, False, _original(0, 0))


def test_compute_box_keeps_aspect_ratio_within_one_pixel():
    ow, oh = 4000, 3000
    for width in range(10, 4000, 137):
        for height in (0, width // 2, width, width * 2):
            box = compute_box(width, height, False, _original(ow, oh))
            assert box is not None
            w, h = box
            assert w <= ow and h <= oh
            assert abs(w * oh / ow - h) <= 1


def test_ratios_match_tolerates_rounding():
    assert ratios_match(768, 576, 4000, 3000)
    assert ratios_match(150, 113, 4000, 3000)
    assert not ratios_match(150, 150, 4000, 3000)
    assert not ratios_match(0, 0, 4000, 3000)


def test_resolve_size_returns_delivery_url_and_records_it(services, fake_client, attachment_factory):
    fake_client.documents[501] = make_document(501)
    aid = attachment_factory()
    attachment = services.store.get_attachment(aid)

    resolved = services.resolver.resolve_size(attachment, SizeSpec.box(800, 0))

    assert resolved is not None
    assert (resolved.width, resolved.height) == (800, 600)
    token = services.permalinks.token_for(attachment)
    assert token.startswith(f"example-{aid}-")
    assert resolved.url == f"https://v.imgi.no/{token}-800x600/sunset.jpg"
    assert resolved.file == "sunset.jpg"

    index = services.store.get(aid, META_PERMALINKS)
    assert index["sunset.jpg-800-0-0"]["url"] == resolved.url

    bulk = fake_client.calls(client_module.CREATE_PERMALINKS)
    assert len(bulk) == 1
    payloads = bulk[0][3]
    assert len(payloads) == 1
    assert payloads[0]["permalinktoken"] == f"{token}-800x600"
    assert payloads[0]["optionalurlhint"] == "https://www.example.com/"


def test_resolve_size_replays_durable_entry_without_remote_calls(services, fake_client, attachment_factory):
    fake_client.documents[501] = make_document(501)
    attachment = services.store.get_attachment(attachment_factory())

    first = services.resolver.resolve_size(attachment, SizeSpec.box(800, 0))
    before = len(fake_client.requests)
    second = services.resolver.resolve_size(attachment, SizeSpec.box(800, 0))

    assert second == first
    assert len(fake_client.requests) == before


def test_resolve_size_probes_zero_sized_original_once_per_session(services, fake_client, attachment_factory):
    fake_client.documents[501] = make_document(501, width=0, height=0)
    fake_client.links["501/original.jpg"] = "https://files.example/501/original.jpg"
    fake_client.files["https://files.example/501/original.jpg"] = png_bytes(1200, 900)
    attachment = services.store.get_attachment(attachment_factory())

    with services.resolver.session() as session:
        a = services.resolver.resolve_size(attachment, SizeSpec.box(600, 0), session=session)
        b = services.resolver.resolve_size(attachment, SizeSpec.box(300, 0), session=session)

    assert (a.width, a.height) == (600, 450)
    assert (b.width, b.height) == (300, 225)
    assert fake_client.fetched == ["https://files.example/501/original.jpg"]
    assert len(fake_client.calls(client_module.GET_DOCUMENT)) == 1


def test_resolve_size_zero_box_makes_no_remote_call(services, fake_client, attachment_factory):
    attachment = services.store.get_attachment(attachment_factory())

    assert services.resolver.resolve_size(attachment, SizeSpec(width=0, height=0)) is None
    assert fake_client.requests == []


def test_resolve_size_without_document_reference(services, fake_client, attachment_factory):
    attachment = services.store.get_attachment(attachment_factory(document_id=None))

    assert services.resolver.resolve_size(attachment, SizeSpec.box(800, 600)) is None
    assert fake_client.requests == []


def test_resolve_size_missing_document_falls_back(services, fake_client, attachment_factory, log_records):
    attachment = services.store.get_attachment(attachment_factory())

    assert services.resolver.resolve_size(attachment, SizeSpec.box(800, 600)) is None
    assert "document_fetch_failed" in logged_messages(log_records)


def test_resolve_size_degenerate_geometry_is_logged(services, fake_client, attachment_factory, log_records):
    # Probe fails, so the original stays 0x0 and every box collapses.
    fake_client.documents[501] = make_document(501, width=0, height=0)
    attachment = services.store.get_attachment(attachment_factory())

    assert services.resolver.resolve_size(attachment, SizeSpec.box(800, 600)) is None
    assert "size_degenerate" in logged_messages(log_records)


def test_resolve_size_single_permalink_mode_uses_short_lived_cache(services, fake_client, attachment_factory):
    services.permalinks.batch = False
    fake_client.documents[501] = make_document(501)
    aid = attachment_factory()
    attachment = services.store.get_attachment(aid)

    resolved = services.resolver.resolve_size(attachment, SizeSpec.box(800, 600))
    token = services.permalinks.token_for(attachment)
    assert resolved.url == f"https://v.imgi.no/{token}-800x600/sunset.jpg"

    services.permalinks.flush_index(aid)
    again = services.resolver.resolve_size(attachment, SizeSpec.box(800, 600))

    assert again.url == resolved.url
    assert len(fake_client.calls(client_module.CREATE_PERMALINK)) == 1
    assert fake_client.calls(client_module.CREATE_PERMALINKS) == []


def test_resolve_size_single_permalink_failure_returns_none(services, fake_client, attachment_factory, log_records):
    services.permalinks.batch = False
    fake_client.documents[501] = make_document(501)
    fake_client.routes[("POST", client_module.CREATE_PERMALINK)] = ApiError(code=500, message="boom")
    aid = attachment_factory()

    assert services.resolver.resolve_size(services.store.get_attachment(aid), SizeSpec.box(800, 600)) is None
    assert "permalink_fetch_failed" in logged_messages(log_records)
    assert not services.store.get(aid, META_PERMALINKS)


def test_resolve_original_reports_original_dimensions(services, fake_client, attachment_factory):
    fake_client.documents[501] = make_document(501)
    attachment = services.store.get_attachment(attachment_factory())

    resolved = services.resolver.resolve_size(attachment, SizeSpec.original())

    assert (resolved.width, resolved.height) == (4000, 3000)
    assert resolved.url.endswith("-4000x3000/sunset.jpg")
