"""
Tests for SequenceService counter allocation.
"""

from hrms_kernel.services.sequence_service import SequenceService


class TestSequenceService:

    def test_first_value_is_one(self, session):
        assert SequenceService(session).next_value("test_sequence") == 1

    def test_monotonic(self, session):
        service = SequenceService(session)

        values = [service.next_value("test_sequence") for _ in range(5)]

        assert values == [1, 2, 3, 4, 5]

    def test_sequences_are_independent(self, session):
        service = SequenceService(session)
        service.next_value(SequenceService.AUDIT_EVENT)
        service.next_value(SequenceService.AUDIT_EVENT)

        assert service.next_value(SequenceService.REIMBURSEMENT_BATCH) == 1

    def test_current_value_does_not_increment(self, session):
        service = SequenceService(session)
        assert service.current_value("test_sequence") is None

        service.next_value("test_sequence")

        assert service.current_value("test_sequence") == 1
        assert service.current_value("test_sequence") == 1
