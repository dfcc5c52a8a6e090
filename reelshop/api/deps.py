"""FastAPI dependencies for the Reelshop API."""

from functools import lru_cache

from reelshop.config import Settings, get_settings
from reelshop.services.job_store import JobStore, create_job_store
from reelshop.services.matching import AttributeMatcher
from reelshop.services.media import MediaSource, create_media_source
from reelshop.services.product_matcher import ProductMatcher, create_product_matcher
from reelshop.services.qstash import QStashReceiver
from reelshop.services.queue import VideoQueue, create_video_queue
from reelshop.services.store_creator import StoreCreator, create_store_creator
from reelshop.services.worker import VideoWorker, create_video_worker


def get_settings_dep() -> Settings:
    """Dependency for application settings."""
    return get_settings()


@lru_cache
def get_job_store() -> JobStore:
    """Dependency for the job record store, shared by every request."""
    return create_job_store(get_settings())


@lru_cache
def get_video_worker() -> VideoWorker:
    return create_video_worker(get_job_store(), get_settings())


@lru_cache
def get_video_queue() -> VideoQueue:
    """Dependency for the dispatcher. Local mode runs ``get_video_worker()`` in-process."""
    return create_video_queue(get_job_store(), get_video_worker().process, get_settings())


@lru_cache
def get_media_source() -> MediaSource:
    return create_media_source(get_settings())


@lru_cache
def get_qstash_receiver() -> QStashReceiver:
    settings = get_settings()
    return QStashReceiver(settings.qstash_current_signing_key, settings.qstash_next_signing_key)


def get_attribute_matcher() -> AttributeMatcher:
    return AttributeMatcher()


@lru_cache
def get_store_creator() -> StoreCreator:
    return create_store_creator(get_settings())


@lru_cache
def get_product_matcher() -> ProductMatcher:
    """Dependency for end-to-end matching; builds a model router from settings."""
    return create_product_matcher(get_settings())
