"""Tests for the inventory ledger."""

import threading

import pytest

from storefront import inventory
from storefront.errors import InsufficientStock, NotFound, ValidationError


class TestReserve:
    def test_reserve_returns_new_balance(self, db, make_variant, stock_of):
        variant = make_variant(sku="GMS-L-NVY", stock=5)
        assert inventory.reserve(db, variant.sku, 2) == 3
        db.commit()
        assert stock_of("GMS-L-NVY") == 3

    def test_reserve_whole_stock(self, db, make_variant):
        variant = make_variant(stock=2)
        assert inventory.reserve(db, variant.sku, 2) == 0

    def test_insufficient_stock_names_the_variant(self, db, make_variant):
        variant = make_variant(sku="GMS-S-MRN", stock=1, name="Gamis Aisyah", size="S", color="Maroon")
        with pytest.raises(InsufficientStock) as exc_info:
            inventory.reserve(db, variant.sku, 2)
        error = exc_info.value
        assert error.sku == "GMS-S-MRN"
        assert error.available == 1
        assert "Gamis Aisyah (S, Maroon)" in error.message
        assert error.to_dict()["sku"] == "GMS-S-MRN"

    def test_inactive_variant_cannot_be_reserved(self, db, make_variant, stock_of):
        variant = make_variant(stock=10, active=False)
        with pytest.raises(InsufficientStock):
            inventory.reserve(db, variant.sku, 1)
        db.rollback()
        assert stock_of(variant.sku) == 10

    @pytest.mark.parametrize("qty", [0, -3])
    def test_quantity_must_be_positive(self, db, make_variant, qty):
        variant = make_variant(stock=10)
        with pytest.raises(ValidationError):
            inventory.reserve(db, variant.sku, qty)

    def test_unknown_sku(self, db):
        with pytest.raises(NotFound):
            inventory.reserve(db, "NOPE", 1)

    def test_rollback_undoes_reservation(self, db, make_variant, stock_of):
        variant = make_variant(sku="KRD-ALL-HTM", stock=4)
        inventory.reserve(db, variant.sku, 3)
        db.rollback()
        assert stock_of("KRD-ALL-HTM") == 4


class TestRelease:
    def test_release_adds_back(self, db, make_variant, stock_of):
        variant = make_variant(stock=1)
        assert inventory.release(db, variant.sku, 4) == 5
        db.commit()
        assert stock_of(variant.sku) == 5

    def test_release_unknown_sku(self, db):
        with pytest.raises(NotFound):
            inventory.release(db, "NOPE", 1)

    def test_release_quantity_must_be_positive(self, db, make_variant):
        variant = make_variant(stock=1)
        with pytest.raises(ValidationError):
            inventory.release(db, variant.sku, 0)


class TestIsAvailable:
    def test_is_available(self, db, make_variant):
        variant = make_variant(stock=3)
        assert inventory.is_available(db, variant.sku, 3)
        assert not inventory.is_available(db, variant.sku, 4)

    def test_inactive_or_missing_is_unavailable(self, db, make_variant):
        variant = make_variant(stock=3, active=False)
        assert not inventory.is_available(db, variant.sku, 1)
        assert not inventory.is_available(db, "NOPE", 1)


class TestConcurrentReservations:
    def test_concurrent_reservations_never_oversell(self, session_factory, make_variant, stock_of):
        make_variant(sku="HJB-PSM-ABU", stock=5)
        workers = 12
        successes = []
        shortfalls = []
        barrier = threading.Barrier(workers)

        def worker():
            session = session_factory()
            try:
                barrier.wait()
                inventory.reserve(session, "HJB-PSM-ABU", 1)
                session.commit()
                successes.append(1)
            except InsufficientStock:
                session.rollback()
                shortfalls.append(1)
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(successes) == 5
        assert len(shortfalls) == workers - 5
        assert stock_of("HJB-PSM-ABU") == 0

    def test_concurrent_multi_unit_reservations(self, session_factory, make_variant, stock_of):
        make_variant(sku="MKN-ALL-PTH", stock=7)
        reserved = []
        barrier = threading.Barrier(4)

        def worker():
            session = session_factory()
            try:
                barrier.wait()
                inventory.reserve(session, "MKN-ALL-PTH", 3)
                session.commit()
                reserved.append(3)
            except InsufficientStock:
                session.rollback()
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(reserved) == 6
        assert stock_of("MKN-ALL-PTH") == 1
