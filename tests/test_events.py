import pytest

from core.pipeline.errors import EventError
from core.pipeline.events import object_ref_from_event
from core.storage.objects import ObjectRef


def s3_event(bucket, key):
    return {"Records": [{"eventName": "ObjectCreated:Put",
                         "s3": {"bucket": {"name": bucket}, "object": {"key": key, "size": 10}}}]}


def test_key_is_url_decoded():
    ref = object_ref_from_event(s3_event("uploads", "reports/Q1+summary%2B%C3%A9.csv"))
    assert ref == ObjectRef("uploads", "reports/Q1 summary+é.csv")


@pytest.mark.parametrize("event", [
    {},
    {"Records": []},
    {"Records": [{"s3": {"bucket": {"name": "b"}}}]},
    s3_event("uploads", ""),
    None,
])
def test_malformed_events(event):
    with pytest.raises(EventError):
        object_ref_from_event(event)
