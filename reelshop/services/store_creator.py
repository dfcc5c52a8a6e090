"""Publishes a storefront entry for each completed job."""

import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from reelshop.config import Settings, get_settings
from reelshop.models.analysis import ProcessedVideo
from reelshop.models.store import StoreEntry
from reelshop.utils.errors import StoreCreationError

logger = logging.getLogger(__name__)


class StoreCreator:
    """Keeps storefront entries in a JSON file."""

    def __init__(self, data_file: str = "data/stores.json") -> None:
        self.data_file = data_file

    def _load_data(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self.data_file):
            return {}
        try:
            with open(self.data_file, "r") as f:
                return json.load(f).get("stores", {})
        except (OSError, ValueError) as e:
            raise StoreCreationError(f"Cannot read {self.data_file}: {e}")

    def _save_data(self, stores: Dict[str, Dict[str, Any]]) -> None:
        os.makedirs(os.path.dirname(self.data_file) or ".", exist_ok=True)
        data = {"stores": stores, "last_updated": datetime.now().isoformat()}
        with open(self.data_file, "w") as f:
            json.dump(data, f, indent=2)

    async def create_from_job(self, job_id: str, processed: ProcessedVideo) -> StoreEntry:
        """
        Create or refresh the storefront for a job's analysis.

        Each job has one entry, keyed ``store-<job_id>``. Re-running a job
        replaces its entry and keeps the original creation time.

        Args:
            job_id: The completed job
            processed: Result payload stored on the job

        Returns:
            The stored entry
        """
        analysis = processed.analysis
        store_id = f"store-{job_id}"
        visual = analysis.vision_data

        try:
            stores = self._load_data()
            previous = stores.get(store_id)

            store = StoreEntry(
                id=store_id,
                job_id=job_id,
                name=analysis.seo.title,
                creator=f"{visual.aesthetic_style} Creator" if visual.target_audience else "Content Creator",
                creator_handle=f"@creator-{job_id}",
                product_count=len(analysis.products),
                products=analysis.products,
                seo=analysis.seo,
            )
            if previous is not None:
                store.created_at = StoreEntry.model_validate(previous).created_at

            stores[store.id] = store.model_dump(mode="json")
            self._save_data(stores)
        except OSError as e:
            raise StoreCreationError(f"Failed to save store {store_id}: {e}")

        action = "Refreshed" if previous is not None else "Created"
        logger.info(f"{action} store {store.id} for job {job_id} with {store.product_count} products")
        return store

    async def get_by_job(self, job_id: str) -> Optional[StoreEntry]:
        raw = self._load_data().get(f"store-{job_id}")
        return StoreEntry.model_validate(raw) if raw is not None else None

    async def list_stores(
        self, status: Optional[str] = None, limit: Optional[int] = None
    ) -> List[StoreEntry]:
        """Stores newest first, optionally filtered by status and truncated."""
        stores = [StoreEntry.model_validate(raw) for raw in self._load_data().values()]
        if status:
            stores = [s for s in stores if s.status == status]
        stores.sort(key=lambda s: s.created_at, reverse=True)
        return stores[:limit] if limit is not None else stores


def create_store_creator(settings: Optional[Settings] = None) -> StoreCreator:
    settings = settings or get_settings()
    return StoreCreator(os.path.join(settings.data_dir, "stores.json"))
