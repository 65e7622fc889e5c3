# menu_image_guard/demo/seed_demo_data.py

from menu_image_guard.core.cache import ArtifactCache
from menu_image_guard.core.normalizer import normalize_title
from menu_image_guard.storage.models import Group, GroupMember
from menu_image_guard.storage.repository import (
    CacheRepository,
    GroupRepository,
    initialize_schema,
)

initialize_schema()

GroupRepository().save_group(
    Group(
        group_id="g1",
        name="Sunday Supper Club",
        code="SUP123",
        members=[GroupMember(name="Ana"), GroupMember(name="Matt")],
    )
)

cache = ArtifactCache(CacheRepository())
cache.insert(
    normalize_title("Matt's Smoked Ribs"),
    "https://storage.googleapis.com/demo-bucket/menu-images/matts-smoked-ribs.png",
)

print("Demo group and cached image inserted")
