"""Tests for custom attribute definition reconciliation."""

import logging

import pytest

from set_vm_custom_attributes import AttributeStatus, RunMode, reconcile_attributes


class TestReconcileAttributes:
    """Tests for reconcile_attributes."""

    def test_apply_creates_missing_once(self, vcenter) -> None:
        """Each missing attribute is created exactly once, existing ones are left alone."""
        vcenter.definitions.append("Env")

        results = reconcile_attributes(vcenter.session, ("Owner", "Env", "Backup"), RunMode.APPLY)

        created = [call.args[0] for call in vcenter.session.create_attribute_definition.call_args_list]
        assert created == ["Owner", "Backup"]
        assert [(r.name, r.status) for r in results] == [
            ("Owner", AttributeStatus.CREATED),
            ("Env", AttributeStatus.EXISTS),
            ("Backup", AttributeStatus.CREATED),
        ]

    def test_report_never_creates(self, vcenter, caplog: pytest.LogCaptureFixture) -> None:
        """Report mode logs missing attributes without creating them."""
        caplog.set_level(logging.INFO)
        vcenter.definitions.append("Env")

        results = reconcile_attributes(vcenter.session, ("Owner", "Env"), RunMode.REPORT)

        vcenter.session.create_attribute_definition.assert_not_called()
        assert [r.status for r in results] == [AttributeStatus.WOULD_CREATE, AttributeStatus.EXISTS]
        assert "Report: Custom attribute 'Owner' would be created." in caplog.messages
        assert "Custom attribute 'Env' already exists. No action needed." in caplog.messages

    def test_creation_failure_continues(self, vcenter, caplog: pytest.LogCaptureFixture) -> None:
        """A failed creation is logged and the next attribute is still handled."""
        caplog.set_level(logging.INFO)

        def create(name: str) -> None:
            if name == "Owner":
                raise RuntimeError("duplicate name")
            vcenter.definitions.append(name)

        vcenter.session.create_attribute_definition.side_effect = create

        results = reconcile_attributes(vcenter.session, ("Owner", "Env"), RunMode.APPLY)

        assert [r.status for r in results] == [AttributeStatus.FAILED, AttributeStatus.CREATED]
        assert results[0].message == "duplicate name"
        assert "Failed to create custom attribute 'Owner': duplicate name" in caplog.messages
        assert vcenter.definitions == ["Env"]

    def test_no_attribute_columns(self, vcenter) -> None:
        """A key-only input makes no remote changes."""
        assert reconcile_attributes(vcenter.session, (), RunMode.APPLY) == []
        vcenter.session.create_attribute_definition.assert_not_called()
