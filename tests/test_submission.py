from perfstat.domain.fields import FieldKey, FieldKind
from perfstat.domain.models import StatisticStatus
from perfstat.engine.shape import FormShapeBuilder
from perfstat.engine.submission import assemble, prior_values, record_key


def test_assemble_skips_blank_fields(make_topic):
    topic = make_topic(id=2, questions=[{"id": 1}, {"id": 2}, {"id": 3, "type": "PDF_DOCUMENT"}])
    state = {
        FieldKey.flat(1): "4",
        FieldKey.flat(2): "  ",
        FieldKey.flat(3).with_kind(FieldKind.PDF): "/uploads/performanceDocs/1-a.pdf",
        FieldKey.flat(3).with_kind(FieldKind.WORD): "",
    }
    records = assemble(state, topic, module_id=1, status=StatisticStatus.SAVED)

    assert [(r.question_id, r.field_kind, r.value) for r in records] == [
        (1, "value", "4"),
        (3, "pdf", "/uploads/performanceDocs/1-a.pdf"),
    ]
    assert all(r.topic_id == 2 and r.module_id == 1 and r.status is StatisticStatus.SAVED for r in records)


def test_assemble_matrix_and_dates(make_topic):
    topic = make_topic(formType="Q/ST", questions=[{"id": 1}], subTopics=[{"id": 10}])
    state = {
        FieldKey.cell(1, 10, 3): "7",
        FieldKey.date(9, 1): "2026-09-04",
    }
    records = assemble(state, topic, module_id=1)

    assert (records[0].company_id, records[0].sub_topic_id, records[0].value) == (3, 10, "7")
    assert (records[1].field_kind, records[1].entry_index) == ("date", 1)
    assert [record_key(r) for r in records] == list(state)


def test_saved_records_restore_the_form(make_topic):
    topic = make_topic(
        questions=[
            {"id": 201, "question": "No. of Police Sabha held"},
            {"id": 202, "type": "DATE"},
            {"id": 203, "type": "WORD_DOCUMENT"},
            {"id": 204},
        ]
    )
    state = {
        FieldKey.flat(201): "2",
        FieldKey.date(202, 0): "2026-09-01",
        FieldKey.date(202, 1): "2026-09-15",
        FieldKey.flat(203).with_kind(FieldKind.PDF): "",
        FieldKey.flat(203).with_kind(FieldKind.WORD): "/uploads/performanceDocs/1-minutes.docx",
        FieldKey.flat(204): "",
    }
    restored = FormShapeBuilder().build(topic, prior=prior_values(assemble(state, topic, module_id=1)))

    assert restored == state
