"""
Threaded reservation races on a file-backed SQLite database.

Each thread runs in its own application context (and so its own session);
the guarded UPDATE must let exactly one of two over-committing reservations
through.
"""

import os
import tempfile
import threading
import unittest

from backoffice import create_app
from backoffice.errors import InsufficientStockError
from backoffice.extensions import db
from backoffice.models import Product
from backoffice.services import batch_catalog, location_registry, reservation_service, stock_ledger
from backoffice.services.fefo_allocator import Allocation


class ReservationRaceTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            product = Product(code="RACE-1", name="Contended Product", unit_price_cents=1000)
            db.session.add(product)
            db.session.commit()

            location = location_registry.create_location("RACE", 100)
            batch = batch_catalog.create_batch(
                product_id=product.id, batch_code="RACE-B1", quantity=5, location_id=location.id
            )
            stock_ledger.shelve_stock(batch.id, location.id, 5)
            self.batch_id = batch.id
            self.location_id = location.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _race(self, worker, quantities):
        barrier = threading.Barrier(len(quantities))
        results = []
        lock = threading.Lock()

        def run(qty):
            with self.app.app_context():
                barrier.wait()
                try:
                    worker(qty)
                    outcome = "reserved"
                except InsufficientStockError:
                    outcome = "insufficient"
                except Exception as exc:  # surfaced through results
                    outcome = f"error: {exc!r}"
                finally:
                    db.session.remove()
                with lock:
                    results.append((qty, outcome))

        threads = [threading.Thread(target=run, args=(qty,)) for qty in quantities]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results

    def _final_record(self):
        with self.app.app_context():
            return stock_ledger.get_stock_record(self.batch_id, self.location_id).to_dict()

    def test_concurrent_ledger_reservations_single_winner(self):
        results = self._race(
            lambda qty: stock_ledger.reserve(self.batch_id, self.location_id, qty),
            [3, 4],
        )

        outcomes = sorted(outcome for _, outcome in results)
        self.assertEqual(outcomes, ["insufficient", "reserved"], results)

        winner = next(qty for qty, outcome in results if outcome == "reserved")
        record = self._final_record()
        self.assertEqual(record["quantity_reserved"], winner)
        self.assertLessEqual(record["quantity_reserved"], record["quantity_on_shelf"])

    def test_concurrent_order_reservations_single_winner(self):
        results = self._race(
            lambda qty: reservation_service.reserve_for_order(
                None, [Allocation(self.batch_id, self.location_id, qty, 1000)]
            ),
            [3, 4],
        )

        reserved = [qty for qty, outcome in results if outcome == "reserved"]
        self.assertEqual(len(reserved), 1, results)
        self.assertEqual(self._final_record()["quantity_reserved"], reserved[0])


if __name__ == "__main__":
    unittest.main()
