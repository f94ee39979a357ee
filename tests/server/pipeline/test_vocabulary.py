"""Tests for vocabulary compatibility and vocabulary export import."""

from __future__ import annotations

import pytest

from fieldsync.server.database import Database
from fieldsync.server.pipeline.vocabulary import (
    check_vocabulary_compatibility,
    import_vocabulary_export,
)


class TestCheckVocabularyCompatibility:
    """Tests for check_vocabulary_compatibility."""

    def test_identical_versions(self) -> None:
        report = check_vocabulary_compatibility({"building_type": "1.2.0"}, {"building_type": "1.2.0"})

        assert report.is_compatible
        assert report.issues == []

    def test_patch_difference_ignored(self) -> None:
        report = check_vocabulary_compatibility({"building_type": "1.2.9"}, {"building_type": "1.2.0"})

        assert report.is_compatible
        assert report.issues == []

    def test_minor_difference_warns(self) -> None:
        report = check_vocabulary_compatibility({"building_type": "1.1.0"}, {"building_type": "1.3.0"})

        assert report.is_compatible
        assert report.messages == ["building_type: minor version difference (server v1.3.0)"]
        assert report.blocking_messages == []

    def test_major_difference_blocks(self) -> None:
        report = check_vocabulary_compatibility({"building_type": "1.0.0"}, {"building_type": "2.0.0"})

        assert not report.is_compatible
        assert report.blocking_messages == ["building_type: MAJOR version mismatch (server v2.0.0)"]
        issue = report.issues[0]
        assert issue.package_version == "1.0.0"
        assert issue.server_version == "2.0.0"

    def test_older_major_on_device_also_blocks(self) -> None:
        """A MAJOR difference blocks whichever side is newer."""
        report = check_vocabulary_compatibility({"damage_level": "3.0.0"}, {"damage_level": "2.4.1"})

        assert not report.is_compatible

    def test_unknown_vocabulary_warns(self) -> None:
        report = check_vocabulary_compatibility({"roof_material": "1.0.0"}, {})

        assert report.is_compatible
        assert report.messages == ["roof_material: unknown vocabulary, not known to the server"]

    def test_server_only_vocabulary_is_fine(self) -> None:
        """Vocabularies the device did not record are not reported."""
        report = check_vocabulary_compatibility({}, {"building_type": "1.0.0"})

        assert report.issues == []

    def test_messages_independent_of_order(self) -> None:
        """Same incompatibility yields the same messages whatever the order."""
        server = {"a": "2.0.0", "b": "1.5.0"}
        first = check_vocabulary_compatibility({"b": "1.0.0", "a": "1.0.0"}, server)
        second = check_vocabulary_compatibility({"a": "1.9.0", "b": "1.1.0"}, server)

        assert first.messages == second.messages
        assert [i.name for i in first.issues] == ["a", "b"]


class TestImportVocabularyExport:
    """Tests for import_vocabulary_export."""

    def _export(self, **entry: object) -> dict:
        base = {
            "vocabularyName": "building_type",
            "displayNameArabic": "نوع البناء",
            "displayNameEnglish": "Building type",
            "category": "Buildings",
            "values": [
                {"code": 1, "labelArabic": "سكني", "labelEnglish": "Residential", "displayOrder": 1},
                {"code": 2, "labelArabic": "تجاري", "labelEnglish": "Commercial", "displayOrder": 2},
            ],
        }
        base.update(entry)
        return {"vocabularies": [base]}

    def test_creates_new_vocabulary(self, db: Database) -> None:
        messages = import_vocabulary_export(db, self._export())

        assert messages == ["Created vocabulary 'building_type' v1.0.0"]
        assert db.vocabulary_versions() == {"building_type": "1.0.0"}
        assert db.vocabulary_codes() == {"building_type": {1, 2}}

    def test_existing_vocabulary_gets_minor_bump(self, db: Database) -> None:
        import_vocabulary_export(db, self._export())

        messages = import_vocabulary_export(db, self._export())

        assert messages == ["Updated vocabulary 'building_type' from v1.0.0 to v1.1.0"]
        assert db.vocabulary_versions()["building_type"] == "1.1.0"

    def test_explicit_version_is_kept(self, db: Database) -> None:
        import_vocabulary_export(db, self._export(version="2.0"))

        assert db.vocabulary_versions()["building_type"] == "2.0.0"

    def test_labels_are_stored(self, db: Database) -> None:
        import_vocabulary_export(db, self._export())

        vocabulary = db.list_vocabularies()[0]
        assert vocabulary.display_name_english == "Building type"
        assert vocabulary.values[0] == {
            "code": 1,
            "labelArabic": "سكني",
            "labelEnglish": "Residential",
            "order": 1,
        }

    def test_rejects_document_without_list(self, db: Database) -> None:
        with pytest.raises(ValueError, match="no 'vocabularies' list"):
            import_vocabulary_export(db, {"items": []})

    def test_rejects_entry_without_name(self, db: Database) -> None:
        with pytest.raises(ValueError, match="without a name"):
            import_vocabulary_export(db, self._export(vocabularyName=""))

    def test_rejects_bad_code(self, db: Database) -> None:
        with pytest.raises(ValueError, match="invalid value code"):
            import_vocabulary_export(db, self._export(values=[{"code": "one"}]))
