"""Content replication service.

Copies an item, or a folder with its whole subtree, into another user's
drive. Copies share the source's blob reference and get a new metadata
record marked with the acquisition channel. A subtree is copied completely
or not at all: on any failure the copies made so far are deleted again.
"""
import logging
from typing import Dict, List, Optional, Set, Tuple

from ledger.errors import (
    DestinationOwnerNotFoundError, IntegrityError, InvalidRequestError,
    ReplicationError, SourceNotFoundError
)
from ledger.models import ContentSource, Item, ItemKind
from ledger.store import LedgerStore

logger = logging.getLogger(__name__)

# Acquisition channel -> (mirror folder name, name suffix)
MIRRORS: Dict[ContentSource, Tuple[str, str]] = {
    ContentSource.MARKETPLACE: ('marketplace', ' (Purchased)'),
    ContentSource.SHARED: ('shared', ' (Shared)'),
}

MAX_NAME_ATTEMPTS = 100


class ContentReplicator:
    """Copies items between user drives through the ledger store."""

    def __init__(self, store: LedgerStore, max_depth: int = 32, max_items: int = 5000):
        self.store = store
        self.max_depth = max_depth
        self.max_items = max_items

    async def _destination_root(self, owner_id: str) -> str:
        user = await self.store.get_user(owner_id)
        if user is None or not user.root_folder_id:
            raise DestinationOwnerNotFoundError(
                f"Destination user {owner_id} not found", owner_id=owner_id
            )
        return user.root_folder_id

    async def mirror_folder(self, owner_id: str, source: ContentSource) -> Item:
        """Return the owner's mirror folder for ``source``, creating it on first use."""
        if source not in MIRRORS:
            raise InvalidRequestError(f"No mirror folder for content source {source.value}")
        name = MIRRORS[source][0]
        root_id = await self._destination_root(owner_id)

        existing = await self.store.find_child(owner_id, root_id, name)
        if existing:
            return existing

        folder = Item(name=name, kind=ItemKind.FOLDER, parent_id=root_id, owner_id=owner_id)
        try:
            created = await self.store.create_item(folder)
        except IntegrityError:
            # Lost a race with a concurrent grant for the same owner
            existing = await self.store.find_child(owner_id, root_id, name)
            if existing is None:
                raise
            return existing
        logger.info(f"Created {name} folder for user {owner_id}")
        return created

    async def _create_root_copy(self, item: Item) -> Item:
        """Insert the top-level copy, resolving name clashes with a counter."""
        base = item.name
        for attempt in range(1, MAX_NAME_ATTEMPTS + 1):
            candidate = item if attempt == 1 else item.model_copy(update={'name': f"{base} ({attempt})"})
            if await self.store.find_child(item.owner_id, item.parent_id, candidate.name):
                continue
            try:
                return await self.store.create_item(candidate)
            except IntegrityError as e:
                if e.constraint != IntegrityError.ITEM_NAME:
                    raise
        raise InvalidRequestError(f"Could not find a free name for {base!r}")

    async def replicate(
        self,
        source_item_id: str,
        destination_owner_id: str,
        destination_parent_id: Optional[str] = None,
        source: ContentSource = ContentSource.MARKETPLACE
    ) -> Item:
        """Copy an item (and any subtree) into the destination owner's drive.

        Args:
            source_item_id: Item to copy
            destination_owner_id: User receiving the copy
            destination_parent_id: Folder to copy into; defaults to the
                owner's mirror folder for ``source``
            source: Acquisition channel stamped on every copy

        Returns:
            The top-level copy

        Raises:
            SourceNotFoundError: Source item missing
            DestinationOwnerNotFoundError: Destination user or folder missing
            ReplicationError: A copy failed part way; partial copies rolled back
        """
        original = await self.store.get_item(source_item_id)
        if original is None:
            raise SourceNotFoundError(f"Item {source_item_id} not found", item_id=source_item_id)

        if destination_parent_id is None:
            parent = await self.mirror_folder(destination_owner_id, source)
        else:
            await self._destination_root(destination_owner_id)
            parent = await self.store.get_item(destination_parent_id)
            if parent is None or parent.owner_id != destination_owner_id or not parent.is_folder:
                raise DestinationOwnerNotFoundError(
                    f"Folder {destination_parent_id} not found for user {destination_owner_id}"
                )

        suffix = MIRRORS.get(source, ('', ''))[1]
        created: List[str] = []
        try:
            root_copy = await self._copy_tree(original, parent.id, destination_owner_id, source, suffix, created)
        except ReplicationError:
            raise
        except Exception as e:
            logger.error(f"Replication of {source_item_id} failed after {len(created)} copies: {e}")
            rolled_back, orphaned = await self._rollback(created)
            raise ReplicationError(
                f"Could not copy item {source_item_id}: {e}",
                rolled_back=rolled_back,
                orphaned=orphaned
            ) from e

        logger.info(
            f"Replicated {source_item_id} to user {destination_owner_id} "
            f"as {root_copy.id} ({len(created)} items)"
        )
        return root_copy

    def _copy_of(self, item: Item, parent_id: str, owner_id: str, source: ContentSource, suffix: str) -> Item:
        return Item(
            name=f"{item.name}{suffix}",
            kind=item.kind,
            parent_id=parent_id,
            owner_id=owner_id,
            size=item.size,
            mime_type=item.mime_type,
            blob_ref=item.blob_ref,
            content_source=source
        )

    async def _copy_tree(
        self,
        original: Item,
        parent_id: str,
        owner_id: str,
        source: ContentSource,
        suffix: str,
        created: List[str]
    ) -> Item:
        """Copy a subtree depth-first with an explicit stack.

        Every id written is appended to ``created`` as soon as it exists so
        the caller can roll back whatever was made before a failure.
        """
        root_copy = await self._create_root_copy(
            self._copy_of(original, parent_id, owner_id, source, suffix)
        )
        created.append(root_copy.id)

        visited: Set[str] = {original.id}
        stack: List[Tuple[Item, str, int]] = []
        if original.is_folder:
            stack.append((original, root_copy.id, 0))

        while stack:
            folder, copy_id, depth = stack.pop()
            if depth >= self.max_depth:
                raise LimitExceeded(f"Folder nesting deeper than {self.max_depth} levels")

            for child in await self.store.list_children(folder.id):
                if child.id in visited:
                    raise LimitExceeded(f"Item {child.id} appears twice in the source tree")
                visited.add(child.id)
                if len(created) >= self.max_items:
                    raise LimitExceeded(f"Subtree has more than {self.max_items} items")

                child_copy = await self.store.create_item(
                    self._copy_of(child, copy_id, owner_id, source, suffix)
                )
                created.append(child_copy.id)
                if child.is_folder:
                    stack.append((child, child_copy.id, depth + 1))

        return root_copy

    async def _rollback(self, created: List[str]) -> Tuple[List[str], List[str]]:
        """Delete partial copies, children before parents."""
        rolled_back: List[str] = []
        orphaned: List[str] = []
        for item_id in reversed(created):
            try:
                await self.store.delete_items([item_id])
                rolled_back.append(item_id)
            except Exception as e:
                logger.error(f"Could not roll back copied item {item_id}: {e}")
                orphaned.append(item_id)
        if orphaned:
            logger.warning(f"Replication left {len(orphaned)} orphaned items: {orphaned}")
        return rolled_back, orphaned

    async def item_path(self, item: Item) -> str:
        """Slash-separated path of an item below its owner's root folder."""
        parts = []
        current: Optional[Item] = item
        seen: Set[str] = set()
        while current is not None and current.parent_id is not None and current.id not in seen:
            seen.add(current.id)
            parts.append(current.name)
            current = await self.store.get_item(current.parent_id)
        return '/' + '/'.join(reversed(parts))


class LimitExceeded(Exception):
    """Raised inside a copy when the source tree breaks depth or size limits."""
    pass
