"""Interview scheduling module -- slots, meetings, reservation, and lifecycle.

Provides SQLAlchemy models and Pydantic schemas for availability slots and
meetings, SlotStore and MeetingStore repositories, the BookingEngine
reservation transaction, AssignmentWorkflow for admin pairing,
MeetingLifecycleController for status transitions, and the calendar invite
dispatcher with its backfill job.
"""
