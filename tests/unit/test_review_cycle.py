import pytest

from docwriter.core.exceptions import InvalidActionError
from docwriter.generation_logic.review_cycle import SectionReview
from docwriter.models.session_models import ReviewState


@pytest.fixture
def document(samples):
    return "## PART IV. SOLUTIONS (DETAILED)\n\n" + samples.solution(1) + "\n\n## PART V. RESULTS\n\nFluency improved."


def test_review_starts_ready_with_extracted_text(document, samples):
    review = SectionReview.from_document(document, 1)

    assert review.found
    assert review.state == ReviewState.READY_FOR_REVIEW
    assert review.working_text == samples.solution(1)
    assert review.is_revised is False
    assert review.view().not_found_message is None


def test_begin_revision_renders_scoped_instruction(document):
    review = SectionReview.from_document(document, 1)

    instruction = review.begin_revision("  Use fewer steps  ", "Handbook chapter 3", {})

    assert review.state == ReviewState.REVISING
    assert 'SOLUTION 1 and asked for changes:\n"Use fewer steps"' in instruction
    assert "Handbook chapter 3" in instruction
    assert review.working_text in instruction
    assert "Rewrite ONLY SOLUTION 1" in instruction


def test_begin_revision_without_reference_omits_block(document):
    review = SectionReview.from_document(document, 1)
    instruction = review.begin_revision("Shorter", None, {})
    assert "additional reference material" not in instruction


def test_empty_feedback_is_rejected(document):
    review = SectionReview.from_document(document, 1)
    with pytest.raises(InvalidActionError):
        review.begin_revision("   ", None, {})
    assert review.state == ReviewState.READY_FOR_REVIEW


def test_view_shows_revision_draft_while_revising(document):
    review = SectionReview.from_document(document, 1)
    review.begin_revision("Shorter", None, {})
    review.append_revision_chunk("### SOLUTION 1: ")
    review.append_revision_chunk("Short")

    assert review.view().working_text == "### SOLUTION 1: Short"

    review.restart_revision_draft()
    assert review.view().working_text == ""


def test_complete_revision_replaces_working_copy_only(document, samples):
    review = SectionReview.from_document(document, 1)
    review.begin_revision("Shorter", None, {})
    review.complete_revision("\n" + samples.revised(1) + "\n")

    assert review.state == ReviewState.READY_FOR_REVIEW
    assert review.working_text == samples.revised(1)
    assert review.revision_history == [samples.solution(1)]
    assert review.view().revision_count == 1
    assert review.is_revised


def test_approve_replaces_extracted_range(document, samples):
    review = SectionReview.from_document(document, 1)
    review.begin_revision("Shorter", None, {})
    review.complete_revision(samples.revised(1))
    review.approve()

    updated = review.apply_to(document)

    assert review.state == ReviewState.APPROVED
    assert samples.solution(1) not in updated
    assert updated == document.replace(samples.solution(1), samples.revised(1))
    assert updated.startswith("## PART IV. SOLUTIONS (DETAILED)")
    assert updated.endswith("Fluency improved.")


def test_unrevised_section_leaves_document_untouched(document):
    review = SectionReview.from_document(document, 1)
    review.approve()
    assert review.apply_to(document) == document


def test_approve_is_rejected_while_revising(document):
    review = SectionReview.from_document(document, 1)
    review.begin_revision("Shorter", None, {})

    with pytest.raises(InvalidActionError, match="revising"):
        review.approve()
    with pytest.raises(InvalidActionError):
        review.begin_revision("Again", None, {})


def test_failed_revision_returns_to_review_and_keeps_draft(document, samples):
    review = SectionReview.from_document(document, 1)
    review.begin_revision("Shorter", None, {})
    review.append_revision_chunk("### SOLUTION 1: Sho")

    review.fail_revision()

    assert review.state == ReviewState.READY_FOR_REVIEW
    assert review.working_text == samples.solution(1)
    assert review.revision_draft == "### SOLUTION 1: Sho"


def test_missing_section_reports_and_appends_on_approve(samples):
    document = "## PART IV. SOLUTIONS (DETAILED)\n\nNothing was written here."
    review = SectionReview.from_document(document, 2)

    assert review.found is False
    assert "section 2" in review.view().not_found_message
    assert review.working_text == ""

    review.begin_revision("Write it properly", None, {})
    review.complete_revision(samples.revised(2))
    review.approve()

    assert review.apply_to(document) == document + "\n\n" + samples.revised(2)


def test_approve_replaces_section_that_names_itself_in_prose(samples):
    body = samples.solution(1).replace(
        "\n\nEND OF SOLUTION 1",
        "\nSolution 1 was piloted in class 7A before the whole grade.\nTAIL-OF-SOLUTION-ONE\n\nEND OF SOLUTION 1",
    )
    document = "## PART IV. SOLUTIONS (DETAILED)\n\n" + body + "\n\n## PART V. RESULTS\n\nFluency improved."
    review = SectionReview.from_document(document, 1)
    review.begin_revision("Shorter", None, {})
    review.complete_revision(samples.revised(1))
    review.approve()

    updated = review.apply_to(document)

    assert updated == "## PART IV. SOLUTIONS (DETAILED)\n\n" + samples.revised(1) + "\n\n## PART V. RESULTS\n\nFluency improved."
    assert "TAIL-OF-SOLUTION-ONE" not in updated
    assert updated.count("END OF SOLUTION 1") == 1
