"""Keep WiseTime tags in step with Allisa cases."""

import logging

from .models import AllisaCase
from .protocols import AllisaClientProtocol, StateStoreProtocol, TagTargetProtocol

__all__ = [
    "TagSync",
    "LAST_SYNC_KEY",
    "LAST_SYNC_PAGE_KEY",
    "LAST_REFRESHED_KEY",
    "LAST_REFRESHED_PAGE_KEY",
]

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "allisa_last_sync_id"
LAST_SYNC_PAGE_KEY = "allisa_last_sync_page"
LAST_REFRESHED_KEY = "allisa_last_refreshed_id"
LAST_REFRESHED_PAGE_KEY = "allisa_last_refreshed_page"


def _describe(cases: list[AllisaCase]) -> str:
    noun = "tags" if len(cases) > 1 else "tag"
    return f"{len(cases)} {noun}: {', '.join(str(case.case_id) for case in cases)}"


class TagSync:
    """Creates a WiseTime tag per Allisa case and refreshes existing ones."""

    def __init__(
        self,
        allisa: AllisaClientProtocol,
        wisetime: TagTargetProtocol,
        store: StateStoreProtocol,
        tag_upsert_path: str,
        case_url_prefix: str,
        batch_size: int = 500,
    ):
        self.allisa = allisa
        self.wisetime = wisetime
        self.store = store
        self.tag_upsert_path = tag_upsert_path
        self.case_url_prefix = case_url_prefix
        self.batch_size = batch_size

    def sync_new_cases(self) -> None:
        """Upsert tags for every case not yet synced. Blocks until done.

        Cases are read in case id order, one page at a time. The stored
        page may already be fully synced, so the first empty page is
        followed by one look at the next page. Any later empty page moves
        the stored page back to the last page with results, which may
        still gain cases.
        """
        check_next_page = True
        while True:
            last_case_id = self.store.get_int(LAST_SYNC_KEY) or 0
            page = self.store.get_int(LAST_SYNC_PAGE_KEY) or 1

            cases = self.allisa.get_new_cases(last_case_id, page, self.batch_size)
            if not cases:
                if check_next_page:
                    check_next_page = False
                    logger.info("Encountered empty tag list for the first time, checking next page.")
                    self.store.put_int(LAST_SYNC_PAGE_KEY, page + 1)
                    continue
                logger.info(
                    f"No new cases found. Last case ID synced: {last_case_id or 'None'}"
                )
                self.store.put_int(LAST_SYNC_PAGE_KEY, page - 1)
                return

            logger.info(f"Detected {_describe(cases)}")
            self._upsert(cases)

            last_synced = cases[-1].case_id
            self.store.put_int(LAST_SYNC_KEY, last_synced)
            self.store.put_int(LAST_SYNC_PAGE_KEY, page + 1)
            check_next_page = False
            logger.info(f"Last synced case ID: {last_synced} on page {page}")

    def refresh_cases(self) -> None:
        """Re-send one page of already synced cases, wrapping around at the end."""
        last_case_id = self.store.get_int(LAST_REFRESHED_KEY) or 0
        page = (self.store.get_int(LAST_REFRESHED_PAGE_KEY) or 0) + 1

        cases = self.allisa.get_new_cases(last_case_id, page, self.batch_size)
        if not cases:
            # start over next time
            self.store.put_int(LAST_REFRESHED_KEY, 0)
            self.store.put_int(LAST_REFRESHED_PAGE_KEY, 0)
            return

        logger.info(f"Refreshing {_describe(cases)}")
        self._upsert(cases)

        last_refreshed = cases[-1].case_id
        self.store.put_int(LAST_REFRESHED_KEY, last_refreshed)
        self.store.put_int(LAST_REFRESHED_PAGE_KEY, page)
        logger.info(f"Last refreshed case ID: {last_refreshed} on page {page}")

    def _upsert(self, cases: list[AllisaCase]) -> None:
        self.wisetime.upsert_tags(
            [case.to_tag(self.tag_upsert_path, self.case_url_prefix) for case in cases]
        )
