import hashlib

from conftest import logged_messages, make_document
from damsync.providers.imageshop import client as client_module
from damsync.providers.imageshop.models import ApiError, ResolvedSize, SizeSpec
from damsync.providers.imageshop.permalinks import payload_cache_key, site_slug, size_key
from damsync.providers.imageshop.store import META_PERMALINK_TOKEN, META_PERMALINKS


def test_site_slug_strips_scheme_www_port_and_tld():
    assert site_slug("https://www.example.com") == "example"
    assert site_slug("HTTP://WWW.Example.no:8080/blog") == "Example"
    assert site_slug("http://localhost:8000") == "localhost"
    assert site_slug("") == ""


def test_size_key_encodes_crop_flag():
    assert size_key("sunset.jpg", 150, 150, True) == "sunset.jpg-150-150-1"
    assert size_key("sunset.jpg", 768, 0, False) == "sunset.jpg-768-0-0"


def test_payload_cache_key_ignores_key_order():
    assert payload_cache_key({"a": 1, "b": 2}) == payload_cache_key({"b": 2, "a": 1})
    assert payload_cache_key({"a": 1}).startswith("imageshop_permalink_")


def test_token_is_generated_once_and_memoized(services, attachment_factory):
    aid = attachment_factory()
    attachment = services.store.get_attachment(aid)

    token = services.permalinks.token_for(attachment)

    digest = hashlib.md5("2026-10-01 12:00:00-sunset".encode("utf-8")).hexdigest()
    assert token == f"example-{aid}-{digest}"
    assert services.store.get(aid, META_PERMALINK_TOKEN) == token

    renamed = attachment.model_copy(update={"title": "renamed"})
    assert services.permalinks.token_for(renamed) == token


def test_remember_is_additive_and_forget_drops_only_named_keys(services, attachment_factory):
    aid = attachment_factory()
    a = ResolvedSize(width=300, height=225, url="https://v.imgi.no/a/sunset.jpg", file="sunset.jpg")
    b = ResolvedSize(width=768, height=576, url="https://v.imgi.no/b/sunset.jpg", file="sunset.jpg")

    services.permalinks.remember(aid, "sunset.jpg-300-300-0", a)
    services.permalinks.remember(aid, "sunset.jpg-768-0-0", b)
    assert services.permalinks.lookup(aid, "sunset.jpg-300-300-0") == a
    assert services.permalinks.lookup(aid, "sunset.jpg-768-0-0") == b

    services.permalinks.forget(aid, ["sunset.jpg-300-300-0"])
    assert services.permalinks.lookup(aid, "sunset.jpg-300-300-0") is None
    assert services.permalinks.lookup(aid, "sunset.jpg-768-0-0") == b


def test_batch_session_announces_all_sizes_in_one_call(services, fake_client, attachment_factory):
    fake_client.documents[501] = make_document(501)
    attachment = services.store.get_attachment(attachment_factory())

    with services.resolver.session() as session:
        for width in (300, 768, 1024):
            services.resolver.resolve_size(attachment, SizeSpec.box(width, 0), session=session)
        assert session.pending == 3

    bulk = fake_client.calls(client_module.CREATE_PERMALINKS)
    assert len(bulk) == 1
    assert sorted(p["width"] for p in bulk[0][3]) == [300, 768, 1024]


def test_batch_session_skips_payloads_already_announced(services, fake_client, attachment_factory):
    fake_client.documents[501] = make_document(501)
    aid = attachment_factory()
    attachment = services.store.get_attachment(aid)

    services.resolver.resolve_size(attachment, SizeSpec.box(800, 0))
    services.permalinks.flush_index(aid)
    again = services.resolver.resolve_size(attachment, SizeSpec.box(800, 0))

    assert again is not None
    assert len(fake_client.calls(client_module.CREATE_PERMALINKS)) == 1


def test_batch_failure_rolls_back_durable_entries(services, fake_client, attachment_factory, log_records):
    fake_client.documents[501] = make_document(501)
    fake_client.routes[("POST", client_module.CREATE_PERMALINKS)] = ApiError(code=503, message="unavailable")
    aid = attachment_factory()
    services.permalinks.remember(
        aid,
        "sunset.jpg-150-150-1",
        ResolvedSize(width=150, height=113, url="https://v.imgi.no/old/sunset.jpg", file="sunset.jpg"),
    )

    resolved = services.resolver.resolve_size(services.store.get_attachment(aid), SizeSpec.box(800, 0))

    # The caller still gets a URL; only the durable record is withdrawn.
    assert resolved is not None
    index = services.store.get(aid, META_PERMALINKS)
    assert "sunset.jpg-800-0-0" not in index
    assert "sunset.jpg-150-150-1" in index
    assert "permalink_batch_failed" in logged_messages(log_records)


def test_session_close_flushes_only_once(services, fake_client, attachment_factory):
    fake_client.documents[501] = make_document(501)
    attachment = services.store.get_attachment(attachment_factory())

    session = services.resolver.session()
    services.resolver.resolve_size(attachment, SizeSpec.box(800, 0), session=session)
    session.close()
    session.close()

    assert len(fake_client.calls(client_module.CREATE_PERMALINKS)) == 1
