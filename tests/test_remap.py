import deckfill.remap as remap
from deckfill.capacity import make_batch
from deckfill.model import OFFSCREEN_OFFSET, ContentUnit, Element
from deckfill.replicator import copy_element


def _replica_element(*runs, **kwargs):
    return copy_element(Element(1, runs=list(runs), **kwargs))


class _LockedTextElement(Element):
    def set_text(self, text):
        raise RuntimeError("text is locked")


class _StubbornElement(_LockedTextElement):
    def __setattr__(self, name, value):
        if name == "hidden" and value:
            raise RuntimeError("visibility is locked")
        super().__setattr__(name, value)


def test_remap_shifts_indices_by_batch_start():
    element = _replica_element("{{Items[0].Name}} - ${Items[1].Price:,.2f}")

    assert remap.remap_element(element, {"Items": 3}) is True
    assert element.runs == ["{{Items[3].Name}} - ${Items[4].Price:,.2f}"]


def test_remap_is_idempotent():
    element = _replica_element("{{Items[0].Name}}", " / {{image(Items[2].Photo)}}")

    remap.remap_element(element, {"Items": 120})
    first = list(element.runs)
    assert remap.remap_element(element, {"Items": 120}) is False

    assert element.runs == first == ["{{Items[120].Name}}", " / {{image(Items[122].Photo)}}"]


def test_remap_after_binding_does_not_touch_rendered_text():
    element = _replica_element("{{Items[0].Name}}")
    remap.remap_element(element, {"Items": 3})
    element.set_text("Widget")

    assert remap.remap_element(element, {"Items": 3}) is False
    assert element.runs == ["Widget"]


def test_remap_with_new_offsets_starts_from_template_text():
    element = _replica_element("{{Items[1].Name}}")

    remap.remap_element(element, {"Items": 3})
    remap.remap_element(element, {"Items": 6})

    assert element.runs == ["{{Items[7].Name}}"]


def test_remap_without_template_snapshot_applies_difference():
    element = Element(1, runs=["{{Items[0].Name}}"])

    remap.remap_element(element, {"Items": 3})
    remap.remap_element(element, {"Items": 3})
    assert element.runs == ["{{Items[3].Name}}"]

    remap.remap_element(element, {"Items": 6})
    assert element.runs == ["{{Items[6].Name}}"]


def test_remap_on_first_page_changes_nothing():
    unit = ContentUnit(256, elements=[Element(1, runs=["{{Items[0].Name}}"]), Element(2, runs=["Title"])])

    assert remap.remap_unit(unit, {"Items": 0}) == 0
    assert unit.elements[0].runs == ["{{Items[0].Name}}"]


def test_reference_split_across_runs_is_joined():
    element = _replica_element("{{Items[", "0].Name}}")

    remap.remap_element(element, {"Items": 3})

    assert element.runs == ["{{Items[3].Name}}"]


def test_remap_leaves_other_collections_alone():
    element = _replica_element("{{Items[0].Name}} {{Tags[0]}}")

    remap.remap_element(element, {"Items": 4, "Tags": 0})

    assert element.runs == ["{{Items[4].Name}} {{Tags[0]}}"]


def _last_page():
    # Third page of seven items at three per page, already remapped.
    unit = ContentUnit(
        258,
        name="products__3",
        elements=[
            Element(1, runs=["Products"]),
            Element(2, runs=["{{Items[6].Name}}"], x=10, y=20, width=100, height=30),
            Element(3, runs=["{{Items[7].Name}}"], x=10, y=60, width=100, height=30),
            Element(4, runs=["{{Items[8].Name}}"], x=10, y=100, width=100, height=30),
        ],
    )
    return unit, {"Items": make_batch(2, 3, 7)}


def test_guard_hides_every_element_beyond_the_data():
    unit, batches = _last_page()

    result = remap.guard_unit(unit, batches)

    assert [el.element_id for el in result.hidden] == [3, 4]
    assert result.exposed == []
    assert result.failures == []
    assert unit.elements[1].hidden is False
    assert unit.elements[1].runs == ["{{Items[6].Name}}"]
    for element in unit.elements[2:]:
        assert element.runs == []
        assert (element.width, element.height) == (1, 1)
        assert (element.x, element.y) == (OFFSCREEN_OFFSET, OFFSCREEN_OFFSET)
        assert element.hidden is True
        assert element.fill_opacity == 0.0
        assert element.attrs[remap.ORIGINAL_SIZE_ATTR] == "100,30"


def test_guard_keeps_going_when_one_mechanism_fails():
    unit, batches = _last_page()
    unit.elements[2] = _LockedTextElement(3, runs=["{{Items[7].Name}}"], x=10, y=60, width=100, height=30)

    result = remap.guard_unit(unit, batches)

    assert result.failures == ["3:clear-text"]
    assert result.exposed == []
    locked = unit.elements[2]
    assert locked.hidden is True
    assert (locked.width, locked.height) == (1, 1)
    assert locked.fill_opacity == 0.0


def test_guard_reports_elements_it_could_not_hide():
    unit, batches = _last_page()
    unit.elements[3] = _StubbornElement(4, runs=["{{Items[8].Name}}"])

    result = remap.guard_unit(unit, batches)

    assert result.exposed == [unit.elements[3]]
    assert "4:hidden-flag" in result.failures


def test_guard_neutralizes_elements_hidden_in_the_template():
    unit, batches = _last_page()
    unit.elements[2].hidden = True

    result = remap.guard_unit(unit, batches)

    assert [el.element_id for el in result.hidden] == [3, 4]
    hidden_before = unit.elements[2]
    assert hidden_before.runs == []
    assert (hidden_before.width, hidden_before.height) == (1, 1)
    assert hidden_before.y >= OFFSCREEN_OFFSET
    assert not result.exposed


def test_restore_element_undoes_geometry_changes():
    element = Element(1, runs=["{{Items[9]}}"], x=5, y=6, width=70, height=80)
    remap.neutralize_element(element)

    remap.restore_element(element)

    assert (element.x, element.y, element.width, element.height) == (5, 6, 70, 80)
    assert element.hidden is False
    assert element.fill_opacity == 1.0
    assert remap.HIDDEN_MARKER not in element.attrs
