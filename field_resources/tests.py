from datetime import date, time, timedelta
from decimal import Decimal
from io import StringIO
from pathlib import Path
from unittest.mock import patch

import requests
from django.core.management import call_command
from django.db import IntegrityError, transaction
from django.test import TestCase, override_settings
from django.test.client import Client
from django.utils.dateparse import parse_datetime

from .models import Project, FieldResource, Assignment, AttendanceRecord, Expense
from .services import AvailabilityCoordinator, ProgressService


class FieldOpsAPITestBase(TestCase):
    """Base test class with common setup and helper methods."""

    def setUp(self):
        """Set up common test data"""
        self.client = Client()
        self.base_date = date(2025, 3, 10)

        self.project = Project.objects.create(code="WASH-24", title="Rural Water and Sanitation Baseline")
        self.other_project = Project.objects.create(code="EDU-07", title="Girls' Education Endline")

        self.resource = FieldResource.objects.create(external_id="fr-1", name="Anita Kumari")
        self.other_resource = FieldResource.objects.create(external_id="fr-2", name="Ravi Shankar")

        self.operator = {"X-Actor-Id": "mgr-1", "X-Actor-Role": "manager"}
        self.worker = {"X-Actor-Id": "fr-1", "X-Actor-Role": "field_resource"}
        self.other_worker = {"X-Actor-Id": "fr-2", "X-Actor-Role": "field_resource"}

    def call(self, method, path, data=None, headers=None):
        """Helper to call the API as the operator unless other headers are given."""
        headers = self.operator if headers is None else headers
        if method == "get":
            return self.client.get(f"/api{path}", data or {}, headers=headers)
        kwargs = {"headers": headers}
        if data is not None:
            kwargs.update(data=data, content_type="application/json")
        return getattr(self.client, method)(f"/api{path}", **kwargs)

    def create_assignment(self, **overrides):
        """Helper to create an assignment through the API and return its JSON."""
        payload = {
            "project_id": self.project.id,
            "resource_id": self.resource.id,
            "start_date": self.base_date,
            "end_date": self.base_date + timedelta(days=4),
            "assigned_districts": ["Gaya"],
            "assigned_villages": ["Village X", "Village Y"],
            "target_interviews": 10,
            "total_days": 5,
            "daily_rate": "500.00",
            "instructions": "Start with the northern hamlets.",
        }
        payload.update(overrides)
        response = self.call("post", "/assignments", payload)
        self.assertEqual(response.status_code, 201, response.content)
        return response.json()

    def transition(self, assignment_id, status, headers=None):
        return self.call("post", f"/assignments/{assignment_id}/transition", {"status": status}, headers)

    def create_active_assignment(self, **overrides):
        assignment = self.create_assignment(**overrides)
        response = self.transition(assignment["id"], "active")
        self.assertEqual(response.status_code, 200, response.content)
        return response.json()

    def check_in(self, assignment_id, day=None, location="Village X", headers=None, **extra):
        payload = {"assignment_id": assignment_id, "location": location, "date": day or self.base_date}
        payload.update(extra)
        return self.call("post", "/attendance/check-in", payload, headers or self.worker)

    def check_out(self, assignment_id, headers=None, **extra):
        payload = {"assignment_id": assignment_id, "location": "Village X"}
        payload.update(extra)
        return self.call("post", "/attendance/check-out", payload, headers or self.worker)

    def is_available(self, resource_id):
        response = self.call("get", f"/resources/{resource_id}/availability")
        self.assertEqual(response.status_code, 200)
        return response.json()["is_available"]


class AssignmentCreateTest(FieldOpsAPITestBase):
    """Test creation rules of the assignment store."""

    def test_create_assignment_starts_pending(self):
        """New assignments are pending and carry derived fields."""
        data = self.create_assignment()

        self.assertEqual(data["status"], "pending")
        self.assertEqual(data["status_display"], "Pending")
        self.assertEqual(data["project_code"], "WASH-24")
        self.assertEqual(data["resource_name"], "Anita Kumari")
        self.assertEqual(data["assigned_by"], "mgr-1")
        self.assertEqual(data["assigned_villages"], ["Village X", "Village Y"])
        self.assertEqual(Decimal(str(data["total_amount"])), Decimal("2500"))
        self.assertEqual(data["completed_interviews"], 0)
        self.assertEqual(data["completion_percentage"], 0)

    def test_pending_creation_does_not_need_availability(self):
        """Creating a pending assignment ignores the availability flag."""
        self.resource.is_available = False
        self.resource.save()

        data = self.create_assignment()
        self.assertEqual(data["status"], "pending")

    def test_create_rejects_invalid_values(self):
        """Date order, targets and rates are validated."""
        cases = [
            {"end_date": self.base_date - timedelta(days=1)},
            {"target_interviews": 0},
            {"total_days": 0},
            {"daily_rate": "-1.00"},
        ]
        for overrides in cases:
            payload = {
                "project_id": self.project.id,
                "resource_id": self.resource.id,
                "start_date": self.base_date,
                "end_date": self.base_date + timedelta(days=4),
                "target_interviews": 10,
                "total_days": 5,
            }
            payload.update(overrides)
            response = self.call("post", "/assignments", payload)
            self.assertEqual(response.status_code, 422, overrides)
            self.assertEqual(response.json()["code"], "validation_error")

        self.assertEqual(Assignment.objects.count(), 0)

    def test_create_rejects_oversized_daily_rate(self):
        response = self.call("post", "/assignments", {
            "project_id": self.project.id,
            "resource_id": self.resource.id,
            "start_date": self.base_date,
            "end_date": self.base_date,
            "target_interviews": 1,
            "total_days": 1,
            "daily_rate": "123456789.00",
        })
        self.assertEqual(response.status_code, 422)
        self.assertEqual(Assignment.objects.count(), 0)

    def test_create_rejects_double_booking(self):
        """A resource cannot hold two open assignments over overlapping dates."""
        first = self.create_assignment()

        response = self.call("post", "/assignments", {
            "project_id": self.other_project.id,
            "resource_id": self.resource.id,
            "start_date": self.base_date + timedelta(days=2),
            "end_date": self.base_date + timedelta(days=8),
            "target_interviews": 5,
            "total_days": 3,
        })
        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["code"], "resource_unavailable")
        self.assertEqual(body["context"]["conflicting_assignment_id"], first["id"])

        # back to back is fine
        self.create_assignment(
            project_id=self.other_project.id,
            start_date=self.base_date + timedelta(days=5),
            end_date=self.base_date + timedelta(days=9),
        )

    def test_cancelled_assignment_does_not_block_dates(self):
        """Only pending and active assignments count as bookings."""
        first = self.create_assignment()
        self.assertEqual(self.transition(first["id"], "cancelled").status_code, 200)

        second = self.create_assignment(project_id=self.other_project.id)
        self.assertEqual(second["status"], "pending")

    def test_create_requires_operator(self):
        """Field resources cannot create assignments."""
        response = self.call("post", "/assignments", {
            "project_id": self.project.id,
            "resource_id": self.resource.id,
            "start_date": self.base_date,
            "end_date": self.base_date,
            "target_interviews": 1,
            "total_days": 1,
        }, headers=self.worker)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_requests_without_actor_are_rejected(self):
        """Every call needs an actor id and a known role."""
        response = self.call("get", "/assignments", headers={})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "unauthenticated")

        response = self.call("get", "/assignments", headers={"X-Actor-Id": "x", "X-Actor-Role": "intruder"})
        self.assertEqual(response.status_code, 401)

    def test_unknown_project_or_resource(self):
        """Unknown references give not_found."""
        response = self.call("post", "/assignments", {
            "project_id": 9999,
            "resource_id": self.resource.id,
            "start_date": self.base_date,
            "end_date": self.base_date,
            "target_interviews": 1,
            "total_days": 1,
        })
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["context"]["project_id"], 9999)


class AssignmentStatusTest(FieldOpsAPITestBase):
    """Test the assignment state machine and its availability side effects."""

    def test_field_work_scenario(self):
        """Activate, check in, check out, measure progress and complete."""
        assignment = self.create_assignment(target_interviews=10, total_days=5)
        self.assertTrue(self.is_available(self.resource.id))

        self.assertEqual(self.transition(assignment["id"], "active").status_code, 200)
        self.assertFalse(self.is_available(self.resource.id))

        self.assertEqual(self.check_in(assignment["id"], location="Village X").status_code, 201)
        second = self.check_in(assignment["id"], location="Village Y")
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["code"], "already_checked_in")

        response = self.check_out(assignment["id"], interviews_conducted=4)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["interviews_conducted"], 4)

        progress = self.call("get", f"/assignments/{assignment['id']}/progress").json()
        self.assertEqual(progress["completed_interviews"], 4)
        self.assertEqual(progress["completion_percentage"], 40)

        response = self.transition(assignment["id"], "completed")
        self.assertEqual(response.json()["status"], "completed")
        self.assertTrue(self.is_available(self.resource.id))

    def test_disallowed_transitions(self):
        """Transitions outside the state machine name both states."""
        assignment = self.create_assignment()

        response = self.transition(assignment["id"], "completed")
        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["code"], "invalid_transition")
        self.assertEqual(body["context"]["current_status"], "pending")
        self.assertEqual(body["context"]["requested_status"], "completed")

        self.transition(assignment["id"], "active")
        self.transition(assignment["id"], "completed")
        for status in ("active", "cancelled", "pending"):
            response = self.transition(assignment["id"], status)
            self.assertEqual(response.status_code, 409, status)

    def test_unknown_status(self):
        """Unknown statuses are a validation error."""
        assignment = self.create_assignment()
        response = self.transition(assignment["id"], "paused")
        self.assertEqual(response.status_code, 422)

    def test_activation_requires_available_resource(self):
        """A resource marked unavailable cannot start an assignment."""
        assignment = self.create_assignment()
        self.call("put", f"/resources/{self.resource.id}/availability", {"is_available": False})

        response = self.transition(assignment["id"], "active")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "resource_unavailable")
        self.assertEqual(Assignment.objects.get(id=assignment["id"]).status, "pending")

    def test_cancelling_active_assignment_frees_resource(self):
        """Leaving active through cancellation also releases the resource."""
        assignment = self.create_active_assignment()
        self.transition(assignment["id"], "cancelled")
        self.assertTrue(self.is_available(self.resource.id))

    def test_resource_stays_busy_while_another_assignment_is_active(self):
        """Completing one assignment keeps the resource busy if another is active."""
        first = self.create_active_assignment()
        # operator override lets a second assignment start
        self.call("put", f"/resources/{self.resource.id}/availability", {"is_available": True})
        second = self.create_active_assignment(
            project_id=self.other_project.id,
            start_date=self.base_date + timedelta(days=10),
            end_date=self.base_date + timedelta(days=12),
        )

        self.transition(first["id"], "completed")
        self.assertFalse(self.is_available(self.resource.id))

        self.transition(second["id"], "completed")
        self.assertTrue(self.is_available(self.resource.id))

    def test_transition_requires_operator(self):
        """Field resources cannot change assignment status."""
        assignment = self.create_assignment()
        response = self.transition(assignment["id"], "active", headers=self.worker)
        self.assertEqual(response.status_code, 403)


class AssignmentUpdateDeleteTest(FieldOpsAPITestBase):
    """Test partial updates and deletion of assignments."""

    def test_pending_assignment_is_fully_editable(self):
        """Dates, targets and rates change while pending."""
        assignment = self.create_assignment()
        response = self.call("patch", f"/assignments/{assignment['id']}", {
            "target_interviews": 25,
            "daily_rate": "650.00",
            "end_date": self.base_date + timedelta(days=6),
        })
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["target_interviews"], 25)
        self.assertEqual(Decimal(str(data["daily_rate"])), Decimal("650"))
        self.assertEqual(data["end_date"], (self.base_date + timedelta(days=6)).isoformat())

    def test_update_keeps_invariants(self):
        """Updates are validated against the merged values."""
        assignment = self.create_assignment()
        response = self.call("patch", f"/assignments/{assignment['id']}", {
            "end_date": self.base_date - timedelta(days=1),
        })
        self.assertEqual(response.status_code, 422)

        response = self.call("patch", f"/assignments/{assignment['id']}", {"total_days": 0})
        self.assertEqual(response.status_code, 422)

    def test_update_rechecks_double_booking(self):
        """Moving dates onto another booking is refused."""
        self.create_assignment()
        later = self.create_assignment(
            project_id=self.other_project.id,
            start_date=self.base_date + timedelta(days=10),
            end_date=self.base_date + timedelta(days=12),
        )
        response = self.call("patch", f"/assignments/{later['id']}", {"start_date": self.base_date + timedelta(days=3)})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "resource_unavailable")

    def test_active_assignment_locks_schedule(self):
        """Once active only instructions and notes change."""
        assignment = self.create_active_assignment()

        response = self.call("patch", f"/assignments/{assignment['id']}", {"target_interviews": 50})
        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["code"], "immutable_state")
        self.assertEqual(body["context"]["fields"], ["target_interviews"])

        response = self.call("patch", f"/assignments/{assignment['id']}", {
            "instructions": "Skip the flooded road.",
            "notes": "Monsoon delays expected.",
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["instructions"], "Skip the flooded road.")

    def test_finished_assignment_only_accepts_notes(self):
        """Completed assignments keep their notes editable."""
        assignment = self.create_active_assignment()
        self.transition(assignment["id"], "completed")

        response = self.call("patch", f"/assignments/{assignment['id']}", {"instructions": "Too late"})
        self.assertEqual(response.status_code, 409)

        response = self.call("patch", f"/assignments/{assignment['id']}", {"notes": "Closed early."})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["notes"], "Closed early.")

    def test_cancelled_assignment_only_accepts_notes(self):
        assignment = self.create_assignment()
        self.transition(assignment["id"], "cancelled")
        self.assertTrue(Assignment.objects.get(id=assignment["id"]).is_terminal)

        response = self.call("patch", f"/assignments/{assignment['id']}", {"instructions": "Resume later"})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["context"]["fields"], ["instructions"])

        response = self.call("patch", f"/assignments/{assignment['id']}", {"notes": "Budget cut."})
        self.assertEqual(response.status_code, 200)

    def test_delete_without_dependents(self):
        """An assignment with no field records can be deleted."""
        assignment = self.create_assignment()
        response = self.call("delete", f"/assignments/{assignment['id']}")
        self.assertEqual(response.status_code, 204)
        self.assertFalse(Assignment.objects.filter(id=assignment["id"]).exists())

    def test_delete_with_attendance_is_blocked(self):
        """Attendance history blocks deletion."""
        assignment = self.create_active_assignment()
        self.check_in(assignment["id"])

        response = self.call("delete", f"/assignments/{assignment['id']}")
        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["code"], "has_dependents")
        self.assertEqual(body["context"]["attendance_records"], 1)
        self.assertTrue(Assignment.objects.filter(id=assignment["id"]).exists())

    def test_delete_with_expense_is_blocked(self):
        """Expense claims block deletion."""
        assignment = self.create_assignment()
        Expense.objects.create(
            assignment_id=assignment["id"], expense_type="food", date=self.base_date, amount=Decimal("80.00")
        )
        response = self.call("delete", f"/assignments/{assignment['id']}")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["context"]["expenses"], 1)

    def test_deleting_active_assignment_frees_resource(self):
        """Removing the only active assignment makes the resource available."""
        assignment = self.create_active_assignment()
        self.assertEqual(self.call("delete", f"/assignments/{assignment['id']}").status_code, 204)
        self.assertTrue(self.is_available(self.resource.id))


class AssignmentListTest(FieldOpsAPITestBase):
    """Test assignment listing and filters."""

    def setUp(self):
        super().setUp()
        self.first = self.create_active_assignment()
        self.second = self.create_assignment(resource_id=self.other_resource.id, project_id=self.other_project.id)

    def test_filters(self):
        """Status, project and resource filters narrow the page."""
        data = self.call("get", "/assignments").json()
        self.assertEqual(data["count"], 2)

        data = self.call("get", "/assignments", {"status": "active"}).json()
        self.assertEqual([row["id"] for row in data["items"]], [self.first["id"]])

        data = self.call("get", "/assignments", {"project_id": self.other_project.id}).json()
        self.assertEqual([row["id"] for row in data["items"]], [self.second["id"]])

        data = self.call("get", "/assignments", {"resource_id": self.resource.id}).json()
        self.assertEqual([row["id"] for row in data["items"]], [self.first["id"]])

    def test_listing_includes_interview_tally(self):
        """Listed assignments carry completed interviews and percentage."""
        self.check_in(self.first["id"])
        self.check_out(self.first["id"], interviews_conducted=3)

        data = self.call("get", "/assignments", {"status": "active"}).json()
        row = data["items"][0]
        self.assertEqual(row["completed_interviews"], 3)
        self.assertEqual(row["completion_percentage"], 30)

    def test_my_assignments(self):
        """Field resources see only their own assignments."""
        data = self.call("get", "/assignments/mine", headers=self.worker).json()
        self.assertEqual([row["id"] for row in data], [self.first["id"]])

        data = self.call("get", "/assignments/mine", {"status": "pending"}, headers=self.other_worker).json()
        self.assertEqual([row["id"] for row in data], [self.second["id"]])

    def test_get_missing_assignment(self):
        response = self.call("get", "/assignments/4242")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")


class AttendanceCheckInOutTest(FieldOpsAPITestBase):
    """Test check-in/check-out and the open session rule."""

    def setUp(self):
        super().setUp()
        self.assignment = self.create_active_assignment()

    def test_check_in_creates_open_session(self):
        """Check-in stores location, coordinates and the call time."""
        response = self.check_in(self.assignment["id"], lat="25.611", lng="85.144")
        self.assertEqual(response.status_code, 201)
        data = response.json()

        self.assertEqual(data["date"], self.base_date.isoformat())
        self.assertEqual(data["check_in_location"], "Village X")
        self.assertIsNotNone(data["check_in_time"])
        self.assertIsNone(data["check_out_time"])
        self.assertEqual(Decimal(str(data["check_in_lat"])), Decimal("25.611"))
        self.assertEqual(data["resource_name"], "Anita Kumari")

    def test_check_in_requires_active_assignment(self):
        """Pending or unknown assignments cannot be checked into."""
        pending = self.create_assignment(
            resource_id=self.other_resource.id, project_id=self.other_project.id
        )
        response = self.check_in(pending["id"], headers=self.other_worker)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["context"]["current_status"], "pending")

        response = self.check_in(9999)
        self.assertEqual(response.status_code, 404)

    def test_open_session_blocks_check_in_on_any_date(self):
        """A session left open yesterday still blocks today's check-in."""
        self.check_in(self.assignment["id"])

        response = self.check_in(self.assignment["id"], day=self.base_date + timedelta(days=1))
        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["code"], "already_checked_in")
        self.assertEqual(body["context"]["open_date"], self.base_date.isoformat())
        self.assertEqual(AttendanceRecord.objects.count(), 1)

    def test_second_check_in_same_day_after_check_out(self):
        """A closed day cannot be checked into again."""
        self.check_in(self.assignment["id"])
        self.check_out(self.assignment["id"])

        response = self.check_in(self.assignment["id"])
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "duplicate_date")

    def test_check_out_without_open_session(self):
        response = self.check_out(self.assignment["id"])
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "no_open_session")

    def test_check_out_defaults_and_extra_fields(self):
        """Interviews default to zero; villages and notes are stored."""
        self.check_in(self.assignment["id"])
        response = self.check_out(
            self.assignment["id"], villages_visited=["Village X", "Village Z"], notes="Road closed after 3pm"
        )
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["interviews_conducted"], 0)
        self.assertEqual(data["villages_visited"], ["Village X", "Village Z"])
        self.assertEqual(data["notes"], "Road closed after 3pm")
        self.assertIsNotNone(data["check_out_time"])
        self.assertIsNotNone(data["hours_worked"])

    def test_check_out_over_target_is_accepted(self):
        """Targets are advisory; large tallies are stored as sent."""
        self.check_in(self.assignment["id"])
        response = self.check_out(self.assignment["id"], interviews_conducted=35)
        self.assertEqual(response.status_code, 200)

        progress = ProgressService.completion_for(self.assignment["id"])
        self.assertEqual(progress.completion_percentage, 350)
        self.assertEqual(progress.remaining_interviews, 0)

    def test_coordinates_are_not_range_checked(self):
        """Implausible coordinates are stored as they arrive."""
        response = self.check_in(self.assignment["id"], lat="123.456", lng="-999.5")
        self.assertEqual(response.status_code, 201)
        record = AttendanceRecord.objects.get()
        self.assertEqual(record.check_in_lat, Decimal("123.456"))
        self.assertEqual(record.check_in_lng, Decimal("-999.5"))

    def test_wide_and_precise_coordinates_are_stored_unchanged(self):
        """Five integer digits or ten decimals fit the coordinate columns."""
        response = self.check_in(self.assignment["id"], lat="12345.678", lng="25.1234567891")
        self.assertEqual(response.status_code, 201, response.content)
        record = AttendanceRecord.objects.get()
        self.assertEqual(record.check_in_lat, Decimal("12345.678"))
        self.assertEqual(record.check_in_lng, Decimal("25.1234567891"))

        self.check_out(self.assignment["id"], lat="25.12345678912")
        record.refresh_from_db()
        self.assertEqual(record.check_out_lat, Decimal("25.12345678912"))

    def test_coordinates_beyond_column_size_are_rejected(self):
        """Oversized coordinates fail validation instead of reaching the database."""
        response = self.check_in(self.assignment["id"], lat="123456789012345.5")
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["code"], "validation_error")

        response = self.check_in(self.assignment["id"], lng="1.1234567890123")
        self.assertEqual(response.status_code, 422)
        self.assertFalse(AttendanceRecord.objects.exists())

    def test_other_field_resource_cannot_check_in(self):
        response = self.check_in(self.assignment["id"], headers=self.other_worker)
        self.assertEqual(response.status_code, 403)

    def test_foreign_assignment_status_is_not_disclosed(self):
        """Permission is checked before the assignment's status."""
        pending = self.create_assignment(
            resource_id=self.other_resource.id, project_id=self.other_project.id
        )
        response = self.check_in(pending["id"], headers=self.worker)
        self.assertEqual(response.status_code, 403)
        self.assertNotIn("current_status", response.json()["context"])

    def test_operator_can_check_in_on_behalf(self):
        response = self.check_in(self.assignment["id"], headers=self.operator)
        self.assertEqual(response.status_code, 201)

    def test_database_allows_one_open_session(self):
        """The open session rule holds even when the service is bypassed."""
        AttendanceRecord.objects.create(
            assignment_id=self.assignment["id"], date=self.base_date, check_in_time=time(9, 0)
        )
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                AttendanceRecord.objects.create(
                    assignment_id=self.assignment["id"],
                    date=self.base_date + timedelta(days=1),
                    check_in_time=time(9, 0),
                )

    def test_database_allows_one_record_per_day(self):
        AttendanceRecord.objects.create(
            assignment_id=self.assignment["id"], date=self.base_date,
            check_in_time=time(9, 0), check_out_time=time(17, 0),
        )
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                AttendanceRecord.objects.create(assignment_id=self.assignment["id"], date=self.base_date)


class AttendanceManualEntryTest(FieldOpsAPITestBase):
    """Test manual entries, edits, queries and today's status."""

    def setUp(self):
        super().setUp()
        self.assignment = self.create_active_assignment()

    def manual(self, day, headers=None, **fields):
        payload = {
            "assignment_id": self.assignment["id"],
            "date": day,
            "check_in_time": "09:00:00",
            "check_out_time": "17:30:00",
            "check_in_location": "Block office",
            "interviews_conducted": 2,
            "villages_visited": ["Village X"],
            "travel_distance_km": "14.5",
        }
        payload.update(fields)
        return self.call("post", "/attendance", payload, headers)

    def test_manual_entry_creates_complete_record(self):
        response = self.manual(self.base_date)
        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["check_out_time"], "17:30:00")
        self.assertEqual(data["hours_worked"], 8.5)
        self.assertEqual(Decimal(str(data["travel_distance_km"])), Decimal("14.5"))

    def test_manual_entry_rejects_duplicate_date(self):
        self.manual(self.base_date)
        response = self.manual(self.base_date, interviews_conducted=5)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "duplicate_date")

    def test_manual_entry_validates_times(self):
        response = self.manual(self.base_date, check_in_time="18:00:00", check_out_time="08:00:00")
        self.assertEqual(response.status_code, 422)

        response = self.manual(self.base_date, check_in_time=None, check_out_time="08:00:00")
        self.assertEqual(response.status_code, 422)

    def test_manual_entry_does_not_open_second_session(self):
        """An open manual entry collides with an existing open session."""
        self.check_in(self.assignment["id"])
        response = self.manual(self.base_date - timedelta(days=1), check_out_time=None)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "already_checked_in")

    def test_manual_entry_is_independent_of_open_session(self):
        """A complete retroactive entry is accepted while a session is open."""
        self.check_in(self.assignment["id"])
        response = self.manual(self.base_date - timedelta(days=1))
        self.assertEqual(response.status_code, 201)

    def test_edit_record(self):
        """Edits change the tally used for progress."""
        record = self.manual(self.base_date).json()
        response = self.call("patch", f"/attendance/{record['id']}", {"interviews_conducted": 6})
        self.assertEqual(response.status_code, 200)

        progress = self.call("get", f"/assignments/{self.assignment['id']}/progress").json()
        self.assertEqual(progress["completed_interviews"], 6)
        self.assertEqual(progress["completion_percentage"], 60)

    def test_session_closed_after_midnight_stays_editable(self):
        """Notes and tallies can be corrected without touching the times."""
        AttendanceRecord.objects.create(
            assignment_id=self.assignment["id"], date=self.base_date, check_in_time=time(23, 59, 59)
        )
        with patch("field_resources.services._call_time", return_value=time(5, 12, 1)):
            response = self.check_out(self.assignment["id"], interviews_conducted=2)
        self.assertEqual(response.status_code, 200)
        record = response.json()
        self.assertEqual(record["check_out_time"], "05:12:01")
        self.assertIsNone(record["hours_worked"])

        response = self.call("patch", f"/attendance/{record['id']}", {"notes": "fix typo"})
        self.assertEqual(response.status_code, 200, response.content)
        self.assertEqual(response.json()["notes"], "fix typo")

        response = self.call("patch", f"/attendance/{record['id']}", {"interviews_conducted": 3})
        self.assertEqual(response.status_code, 200)

        response = self.call("patch", f"/attendance/{record['id']}", {"check_out_time": "05:30:00"})
        self.assertEqual(response.status_code, 422)

    def test_edit_rejects_date_collision(self):
        self.manual(self.base_date)
        other = self.manual(self.base_date + timedelta(days=1)).json()
        response = self.call("patch", f"/attendance/{other['id']}", {"date": self.base_date})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "duplicate_date")

    def test_query_orders_by_date_descending(self):
        for offset in (0, 2, 1):
            self.manual(self.base_date + timedelta(days=offset))

        data = self.call("get", "/attendance", {"assignment_id": self.assignment["id"]}).json()
        self.assertEqual(data["count"], 3)
        self.assertEqual(
            [row["date"] for row in data["items"]],
            [(self.base_date + timedelta(days=d)).isoformat() for d in (2, 1, 0)],
        )

    def test_query_filters(self):
        """Date range and resource filters."""
        for offset in range(4):
            self.manual(self.base_date + timedelta(days=offset))

        data = self.call("get", "/attendance", {
            "date_from": self.base_date + timedelta(days=1),
            "date_to": self.base_date + timedelta(days=2),
        }).json()
        self.assertEqual(data["count"], 2)

        data = self.call("get", "/attendance", {"date": self.base_date}).json()
        self.assertEqual(data["count"], 1)

        data = self.call("get", "/attendance", {"resource_id": self.other_resource.id}).json()
        self.assertEqual(data["count"], 0)

    def test_todays_status(self):
        """Today's status reports the open record and next action."""
        path = f"/assignments/{self.assignment['id']}/attendance/today"

        data = self.call("get", path, {"date": self.base_date}).json()
        self.assertIsNone(data["open_record"])
        self.assertTrue(data["can_check_in"])
        self.assertFalse(data["can_check_out"])

        self.check_in(self.assignment["id"])
        data = self.call("get", path, {"date": self.base_date}).json()
        self.assertEqual(data["open_record"]["check_in_location"], "Village X")
        self.assertFalse(data["can_check_in"])
        self.assertTrue(data["can_check_out"])

        self.check_out(self.assignment["id"])
        data = self.call("get", path, {"date": self.base_date}).json()
        self.assertIsNone(data["open_record"])
        self.assertFalse(data["can_check_in"])
        self.assertFalse(data["can_check_out"])


class ExpenseLedgerTest(FieldOpsAPITestBase):
    """Test expense claims and approvals."""

    def setUp(self):
        super().setUp()
        self.assignment = self.create_active_assignment()

    def submit(self, amount="150.00", expense_type="travel", headers=None, **fields):
        payload = {
            "assignment_id": self.assignment["id"],
            "expense_type": expense_type,
            "date": self.base_date,
            "amount": amount,
            "description": "Bus fare to block office",
        }
        payload.update(fields)
        return self.call("post", "/expenses", payload, headers or self.worker)

    def test_expense_scenario(self):
        """Negative amounts fail, approval locks the claim."""
        response = self.submit(amount="-5")
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["code"], "validation_error")

        response = self.submit(amount="150")
        self.assertEqual(response.status_code, 201)
        expense = response.json()
        self.assertFalse(expense["is_approved"])
        self.assertIsNone(expense["approved_by"])

        response = self.call("post", f"/expenses/{expense['id']}/approve")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["is_approved"])
        self.assertEqual(response.json()["approved_by"], "mgr-1")

        response = self.call("patch", f"/expenses/{expense['id']}", {"amount": "175"})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "immutable_state")

        response = self.call("delete", f"/expenses/{expense['id']}")
        self.assertEqual(response.status_code, 409)

    def test_approve_is_idempotent(self):
        """A second approval returns the first stamp unchanged."""
        expense = self.submit().json()
        first = self.call("post", f"/expenses/{expense['id']}/approve").json()
        second = self.call(
            "post", f"/expenses/{expense['id']}/approve", headers={"X-Actor-Id": "adm-9", "X-Actor-Role": "admin"}
        ).json()

        self.assertEqual(parse_datetime(first["approved_at"]), parse_datetime(second["approved_at"]))
        self.assertEqual(second["approved_by"], "mgr-1")

    def test_amounts_beyond_column_size_are_rejected(self):
        """Amounts must fit ten digits with two decimals."""
        response = self.submit(amount="123456789.00")
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["code"], "validation_error")

        response = self.submit(amount="10.505")
        self.assertEqual(response.status_code, 422)
        self.assertFalse(Expense.objects.exists())

        expense = self.submit(amount="99999999.99").json()
        response = self.call("patch", f"/expenses/{expense['id']}", {"amount": "100000000.00"})
        self.assertEqual(response.status_code, 422)

    def test_zero_amount_and_unknown_type(self):
        self.assertEqual(self.submit(amount="0").status_code, 422)
        response = self.submit(expense_type="entertainment")
        self.assertEqual(response.status_code, 422)
        self.assertIn("travel", response.json()["context"]["allowed"])

    def test_field_resource_cannot_approve(self):
        expense = self.submit().json()
        response = self.call("post", f"/expenses/{expense['id']}/approve", headers=self.worker)
        self.assertEqual(response.status_code, 403)
        self.assertFalse(Expense.objects.get(id=expense["id"]).is_approved)

    def test_other_field_resource_cannot_submit(self):
        response = self.submit(headers=self.other_worker)
        self.assertEqual(response.status_code, 403)

    def test_unapproved_expense_can_be_edited_and_deleted(self):
        expense = self.submit().json()

        response = self.call("patch", f"/expenses/{expense['id']}", {"amount": "90.50", "expense_type": "food"},
                             headers=self.worker)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(Decimal(str(response.json()["amount"])), Decimal("90.50"))
        self.assertEqual(response.json()["expense_type_display"], "Food")

        response = self.call("patch", f"/expenses/{expense['id']}", {"amount": "-1"})
        self.assertEqual(response.status_code, 422)

        response = self.call("delete", f"/expenses/{expense['id']}", headers=self.worker)
        self.assertEqual(response.status_code, 204)
        self.assertFalse(Expense.objects.exists())

    def test_totals(self):
        """Totals split approved and pending amounts."""
        travel = self.submit(amount="150.00").json()
        self.submit(amount="40.25", expense_type="food")
        self.submit(amount="9.75", expense_type="communication", date=self.base_date + timedelta(days=3))
        self.call("post", f"/expenses/{travel['id']}/approve")

        data = self.call("get", "/expenses/totals", {"assignment_id": self.assignment["id"]}).json()
        self.assertEqual(data["count"], 3)
        self.assertEqual(Decimal(str(data["total_amount"])), Decimal("200.00"))
        self.assertEqual(Decimal(str(data["approved_amount"])), Decimal("150.00"))
        self.assertEqual(Decimal(str(data["pending_amount"])), Decimal("50.00"))

        data = self.call("get", "/expenses/totals", {"is_approved": False, "date_to": self.base_date}).json()
        self.assertEqual(data["count"], 1)
        self.assertEqual(Decimal(str(data["pending_amount"])), Decimal("40.25"))

    def test_totals_of_empty_set(self):
        data = self.call("get", "/expenses/totals", {"expense_type": "materials"}).json()
        self.assertEqual(data["count"], 0)
        self.assertEqual(Decimal(str(data["total_amount"])), Decimal("0"))

    def test_list_filters(self):
        travel = self.submit().json()
        self.submit(amount="20", expense_type="food")
        self.call("post", f"/expenses/{travel['id']}/approve")

        data = self.call("get", "/expenses", {"is_approved": True}).json()
        self.assertEqual([row["id"] for row in data["items"]], [travel["id"]])

        data = self.call("get", "/expenses", {"expense_type": "food"}).json()
        self.assertEqual(data["count"], 1)
        self.assertEqual(data["items"][0]["expense_type"], "food")


class ProgressTest(FieldOpsAPITestBase):
    """Test completion metrics."""

    def setUp(self):
        super().setUp()
        self.assignment = self.create_active_assignment(
            target_interviews=20, total_days=5, end_date=self.base_date + timedelta(days=4)
        )

    def add_day(self, offset, interviews):
        AttendanceRecord.objects.create(
            assignment_id=self.assignment["id"],
            date=self.base_date + timedelta(days=offset),
            check_in_time=time(9, 0),
            check_out_time=time(16, 0),
            interviews_conducted=interviews,
        )

    def test_percentage_follows_attendance_tally(self):
        """Prior sum 3 plus a day with 5 out of 20 is 40%."""
        self.add_day(0, 3)
        self.assertEqual(ProgressService.completion_for(self.assignment["id"]).completion_percentage, 15)

        self.add_day(1, 5)
        progress = ProgressService.completion_for(self.assignment["id"])
        self.assertEqual(progress.completed_interviews, 8)
        self.assertEqual(progress.target_interviews, 20)
        self.assertEqual(progress.completion_percentage, 40)
        self.assertEqual(progress.remaining_interviews, 12)
        self.assertEqual(progress.days_worked, 2)

    def test_percentage_rounds_half_up(self):
        """1 of 8 is 12.5%, reported as 13."""
        assignment = Assignment.objects.get(id=self.assignment["id"])
        assignment.target_interviews = 8
        self.assertEqual(assignment.completion_percentage(1), 13)
        self.assertEqual(assignment.completion_percentage(0), 0)

    def test_elapsed_days(self):
        """Elapsed days count calendar days from the start, bounded by the end date."""
        assignment_id = self.assignment["id"]
        before = ProgressService.completion_for(assignment_id, today=self.base_date - timedelta(days=3))
        during = ProgressService.completion_for(assignment_id, today=self.base_date + timedelta(days=2))
        after = ProgressService.completion_for(assignment_id, today=self.base_date + timedelta(days=30))

        self.assertEqual(before.elapsed_days, 0)
        self.assertEqual(during.elapsed_days, 3)
        self.assertEqual(after.elapsed_days, 5)
        self.assertEqual(after.total_days, 5)

    def test_progress_of_missing_assignment(self):
        response = self.call("get", "/assignments/9999/progress")
        self.assertEqual(response.status_code, 404)


@override_settings(FIELD_OPS={
    "PAGE_SIZE": 50,
    "INTERVIEW_SERVICE_URL": "http://interviews.internal/api",
    "INTERVIEW_SERVICE_TIMEOUT": 2.0,
})
class RecordedInterviewsTest(FieldOpsAPITestBase):
    """Test the optional interview service count."""

    def setUp(self):
        super().setUp()
        self.assignment = self.create_active_assignment()

    @patch("field_resources.interviews.requests.get")
    def test_recorded_count_is_reported_next_to_tally(self, mock_get):
        mock_get.return_value.json.return_value = {"count": 7}

        response = self.call("get", f"/assignments/{self.assignment['id']}/progress", {"include_recorded": True})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["recorded_interviews"], 7)
        self.assertEqual(data["completed_interviews"], 0)
        self.assertEqual(mock_get.call_args.kwargs["timeout"], 2.0)

    @patch("field_resources.interviews.requests.get")
    def test_timeout_surfaces_dependency_error(self, mock_get):
        mock_get.side_effect = requests.Timeout("slow")

        response = self.call("get", f"/assignments/{self.assignment['id']}/progress", {"include_recorded": True})
        self.assertEqual(response.status_code, 504)
        body = response.json()
        self.assertEqual(body["code"], "dependency_timeout")
        self.assertTrue(body["retryable"])

    @patch("field_resources.interviews.requests.get")
    def test_other_failures_are_not_retryable(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("refused")

        response = self.call("get", f"/assignments/{self.assignment['id']}/progress", {"include_recorded": True})
        self.assertEqual(response.status_code, 502)
        self.assertFalse(response.json()["retryable"])

    @patch("field_resources.interviews.requests.get")
    def test_service_not_called_by_default(self, mock_get):
        response = self.call("get", f"/assignments/{self.assignment['id']}/progress")
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()["recorded_interviews"])
        mock_get.assert_not_called()


class AvailabilityTest(FieldOpsAPITestBase):
    """Test availability overrides, listing and reconciliation."""

    def test_operator_override(self):
        response = self.call("put", f"/resources/{self.resource.id}/availability", {"is_available": False})
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["is_available"])
        self.assertIsNotNone(response.json()["availability_changed_at"])
        self.assertFalse(AvailabilityCoordinator.is_available(self.resource.id))

    def test_override_requires_operator(self):
        response = self.call("put", f"/resources/{self.resource.id}/availability", {"is_available": False},
                             headers=self.worker)
        self.assertEqual(response.status_code, 403)
        self.assertTrue(AvailabilityCoordinator.is_available(self.resource.id))

    def test_list_available_resources(self):
        self.create_active_assignment()

        data = self.call("get", "/resources", {"available": True}).json()
        self.assertEqual([row["name"] for row in data], ["Ravi Shankar"])

        data = self.call("get", "/resources").json()
        self.assertEqual(len(data), 2)

    def test_reconcile_repairs_flags(self):
        """Flags are derived again from active assignments."""
        assignment = self.create_active_assignment()
        FieldResource.objects.filter(id=self.resource.id).update(is_available=True)
        FieldResource.objects.filter(id=self.other_resource.id).update(is_available=False)

        out = StringIO()
        call_command("reconcile_availability", "--dry-run", stdout=out)
        self.assertIn("Would set", out.getvalue())
        self.assertTrue(FieldResource.objects.get(id=self.resource.id).is_available)

        out = StringIO()
        call_command("reconcile_availability", stdout=out)
        self.assertIn("2 resource(s) out of sync", out.getvalue())
        self.assertFalse(FieldResource.objects.get(id=self.resource.id).is_available)
        self.assertTrue(FieldResource.objects.get(id=self.other_resource.id).is_available)
        self.assertEqual(Assignment.objects.get(id=assignment["id"]).status, "active")

        self.assertEqual(AvailabilityCoordinator.reconcile(), [])


class SeedDataCommandTest(TestCase):
    """Test the demo data loader."""

    def test_load_seed_data(self):
        seed_dir = Path(__file__).resolve().parent.parent / "seed_data"
        out = StringIO()
        call_command("load_seed_data", "--dir", str(seed_dir), stdout=out)

        self.assertEqual(Project.objects.count(), 2)
        self.assertEqual(FieldResource.objects.count(), 3)
        self.assertEqual(Assignment.objects.filter(status="active").count(), 1)
        self.assertFalse(FieldResource.objects.get(id=1).is_available)
        self.assertTrue(FieldResource.objects.get(id=2).is_available)
        self.assertEqual(AvailabilityCoordinator.reconcile(dry_run=True), [])
