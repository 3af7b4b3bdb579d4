from conftest import make_document
from damsync.providers.imageshop import client as client_module
from damsync.providers.imageshop.models import ApiError, Document
from damsync.providers.imageshop.projector import caption_key, generate_caption
from damsync.providers.imageshop.sizes import processing_key
from damsync.providers.imageshop.store import META_MEDIA_SIZES, META_PERMALINKS


def test_generate_caption_combines_description_and_credits():
    assert generate_caption(Document(DocumentID=1, Description="Fjord", Credits="Ola")) == "Fjord (Ola)"
    assert generate_caption(Document(DocumentID=1, Description="Fjord")) == "Fjord"
    assert generate_caption(Document(DocumentID=1, Credits="Ola")) == "Ola"
    assert generate_caption(Document(DocumentID=1)) == ""
    assert generate_caption(None) is None


def test_project_builds_and_stores_every_registered_size(services, fake_client, attachment_factory):
    fake_client.documents[501] = make_document(501, Description="Fjord", Credits="Ola")
    aid = attachment_factory()

    details = services.projector.project(services.store.get_attachment(aid))

    assert {k: (v.width, v.height) for k, v in details.sizes.items()} == {
        "thumbnail": (150, 113),
        "medium": (300, 225),
        "medium_large": (768, 576),
        "large": (1024, 768),
        "1536x1536": (1536, 1152),
        "2048x2048": (2048, 1536),
        "original": (4000, 3000),
        "full": (4000, 3000),
    }
    assert (details.width, details.height) == (4000, 3000)
    assert details.file == "sunset.jpg"
    assert details.caption == "Fjord (Ola)"
    assert details.credits == "Ola"
    assert services.store.get(aid, META_MEDIA_SIZES) == details.model_dump()
    assert len(fake_client.calls(client_module.GET_DOCUMENT)) == 1
    assert len(fake_client.calls(client_module.CREATE_PERMALINKS)) == 1


def test_project_without_reference_or_document(services, fake_client, attachment_factory):
    unlinked = services.store.get_attachment(attachment_factory(document_id=None))
    missing = services.store.get_attachment(attachment_factory(document_id=777))

    assert services.projector.project(unlinked) is None
    assert services.projector.project(missing) is None
    assert services.store.get(missing.local_id, META_MEDIA_SIZES) is None


def test_project_during_processing_window_returns_empty(services, fake_client, attachment_factory):
    fake_client.documents[501] = make_document(501)
    aid = attachment_factory()
    services.cache.set(processing_key(aid), "processing", 300)

    details = services.projector.project(services.store.get_attachment(aid))

    assert details.sizes == {}
    assert fake_client.requests == []


def test_project_without_original_skips_open_ended_sizes(services, fake_client, attachment_factory):
    fake_client.documents[501] = make_document(501, SubDocumentList=[])
    aid = attachment_factory()

    details = services.projector.project(services.store.get_attachment(aid))

    assert "medium_large" not in details.sizes
    assert (details.sizes["thumbnail"].width, details.sizes["thumbnail"].height) == (150, 150)
    assert (details.sizes["original"].width, details.sizes["original"].height) == (0, 0)


def test_caption_is_cached_per_locale(services, fake_client, attachment_factory):
    fake_client.documents[501] = make_document(501, Description="Fjord", Credits="Ola")
    aid = attachment_factory()

    assert services.projector.caption(aid) == "Fjord (Ola)"
    assert services.projector.caption(aid) == "Fjord (Ola)"

    calls = fake_client.calls(client_module.GET_DOCUMENT)
    assert len(calls) == 1
    assert calls[0][2]["language"] == "no"
    assert services.cache.get(caption_key(aid, "nb_NO")) == "Fjord (Ola)"


def test_flush_references_rebuilds_indexes_and_drops_caption(services, fake_client, attachment_factory):
    fake_client.documents[501] = make_document(501, Description="Fjord")
    aid = attachment_factory()
    services.projector.project(services.store.get_attachment(aid))
    services.projector.caption(aid)
    services.store.merge(aid, META_PERMALINKS, {"stale-key": {"width": 1, "height": 1, "url": "x", "file": "x"}})

    details = services.projector.flush_references(aid)

    assert "medium" in details.sizes
    assert "stale-key" not in services.store.get(aid, META_PERMALINKS)
    assert services.cache.get(caption_key(aid, "nb_NO")) is None


def test_update_remote_metadata_maps_fields_and_refreshes(services, fake_client):
    fake_client.documents[501] = make_document(501, name="New title", Description="Fjord", Credits="Ola")

    ret = services.projector.update_remote_metadata(501, {"name": "New title", "credits": "Ola", "ignored": "x"})

    body = fake_client.calls(client_module.SET_METADATA)[0][3]
    assert body == {"DocumentId": 501, "Name": "New title", "Credits": "Ola"}
    assert ret == {"title": "New title", "alt": "Fjord", "caption": "Fjord (Ola)", "description": "Fjord"}


def test_update_remote_metadata_propagates_api_error(services, fake_client):
    fake_client.routes[("PUT", client_module.SET_METADATA)] = ApiError(code=403, message="forbidden")

    ret = services.projector.update_remote_metadata(501, {"name": "x"})

    assert isinstance(ret, ApiError)
    assert ret.code == 403
