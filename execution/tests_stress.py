import threading
import unittest
from concurrent.futures import ThreadPoolExecutor

from django.db import connection
from django.test import TransactionTestCase

from adapters.client import ExchangeClient

from .closure import CLOSED, NOOP, ORPHANED, BracketClosureHandler, LegTriggered
from .models import BracketLink
from .testing import FakeExchange, seed_bracket


@unittest.skipUnless(connection.vendor == "postgresql", "row locks need postgres")
class ConcurrentClosureStressTest(TransactionTestCase):
    """Many symbols, racing closures and orphans on every link: one terminal state each, no deadlocks."""

    links_per_symbol = 4
    symbols = ("AAAUSDT", "BBBUSDT", "CCCUSDT", "DDDUSDT", "EEEUSDT")

    def setUp(self):
        self.fake = FakeExchange()
        client = ExchangeClient(self.fake, attempts=2, base_delay=0, max_delay=0, sleep=lambda _s: None)
        self.handler = BracketClosureHandler(client)
        self.links = []
        for symbol in self.symbols:
            for n in range(self.links_per_symbol):
                prefix = f"{symbol[:3].lower()}{n}"
                self.links.append(
                    seed_bracket(
                        self.fake,
                        symbol=symbol,
                        group_id=prefix,
                        entry_id=f"{prefix}-e",
                        tp_id=f"{prefix}-tp",
                        sl_id=f"{prefix}-sl",
                    )
                )

    def _race(self, link_id: int, barrier: threading.Barrier):
        actions = []
        try:
            barrier.wait(timeout=10)
            actions.append(self.handler.handle_triggered(LegTriggered(link_id, "tp", "FINISHED")).action)
            actions.append(self.handler.orphan(link_id, "stress").action)
            actions.append(self.handler.handle_triggered(LegTriggered(link_id, "sl", "FINISHED")).action)
        finally:
            connection.close()
        return actions

    def test_racing_transitions_settle_once(self):
        workers = 3
        jobs = [link.pk for link in self.links for _ in range(workers)]
        barrier = threading.Barrier(len(jobs))
        with ThreadPoolExecutor(max_workers=len(jobs)) as pool:
            results = list(pool.map(lambda pk: self._race(pk, barrier), jobs))

        winners = [a for actions in results for a in actions if a != NOOP]
        self.assertEqual(len(winners), len(self.links))
        self.assertTrue(set(winners) <= {CLOSED, ORPHANED})
        self.assertFalse(BracketLink.objects.filter(status__in=["active", "closing"]).exists())
        # every sibling is cancelled at most once
        self.assertEqual(len(self.fake.cancelled), len(set(self.fake.cancelled)))
