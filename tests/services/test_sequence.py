"""
InvoiceSequenceService tests.

The locked counter row is the only source of the next number; keys are
independent and values start at 1.
"""

from billing_kernel.models.invoice import InvoiceSequence
from tests.conftest import CLIENT_ID


class TestNextSeq:

    def test_starts_at_one_and_increments(self, sequence_service):
        values = [sequence_service.next_seq(CLIENT_ID, "202602") for _ in range(5)]
        assert values == [1, 2, 3, 4, 5]

    def test_keys_are_independent(self, sequence_service):
        assert sequence_service.next_seq(CLIENT_ID, "202602") == 1
        assert sequence_service.next_seq(CLIENT_ID, "202603") == 1
        assert sequence_service.next_seq(CLIENT_ID + 1, "202602") == 1
        assert sequence_service.next_seq(CLIENT_ID, "202602") == 2

    def test_one_counter_row_per_key(self, session, sequence_service):
        for _ in range(3):
            sequence_service.next_seq(CLIENT_ID, "202602")
        rows = session.query(InvoiceSequence).filter_by(client_id=CLIENT_ID, yyyymm="202602").all()
        assert len(rows) == 1
        assert rows[0].last_seq == 3


class TestCurrentSeq:

    def test_none_before_first_allocation(self, sequence_service):
        assert sequence_service.current_seq(CLIENT_ID, "202602") is None

    def test_reads_without_incrementing(self, sequence_service):
        sequence_service.next_seq(CLIENT_ID, "202602")
        sequence_service.next_seq(CLIENT_ID, "202602")
        assert sequence_service.current_seq(CLIENT_ID, "202602") == 2
        assert sequence_service.current_seq(CLIENT_ID, "202602") == 2
        assert sequence_service.next_seq(CLIENT_ID, "202602") == 3


class TestShared:

    def test_generator_and_duplicate_share_the_counter(self, create_rate, create_event, generator,
                                                       sequence_service, test_actor_id):
        create_rate()
        create_event()
        invoice = generator.generate(CLIENT_ID, "2026-02", test_actor_id).invoice
        generator.issue(invoice.id, test_actor_id)
        generator.duplicate(invoice.id, test_actor_id)
        assert sequence_service.current_seq(CLIENT_ID, "202602") == 2
