from examprep.budget import TokenBudgetEstimator
from examprep.schemas import Strategy, SyllabusDocument, UnitRecord


def _document(topic_count, topic_len=20):
    topics = ["x" * topic_len for _ in range(topic_count)]
    return SyllabusDocument.model_validate(
        {"subject_name": "Compiler Design", "units": [{"unit_number": 1, "title": "Lexing", "topics": topics}]}
    )


def test_small_unit_is_single_shot():
    doc = _document(5)
    budget = TokenBudgetEstimator().estimate(doc.units[0], doc)
    assert budget.strategy == Strategy.SINGLE
    assert budget.max_output_tokens == 4000


def test_estimate_is_deterministic():
    doc = _document(30)
    estimator = TokenBudgetEstimator()
    assert estimator.estimate(doc.units[0], doc) == estimator.estimate(doc.units[0], doc)


def test_large_input_switches_to_chunked():
    # (context + unit + 2000) / 3.5 + 4000 must exceed 12000 -> roughly 26k input chars
    doc = _document(300, topic_len=100)
    budget = TokenBudgetEstimator().estimate(doc.units[0], doc)
    assert budget.strategy == Strategy.CHUNKED
    assert budget.max_output_tokens == 4000
    assert budget.estimated_cost > 12000


def test_threshold_follows_configured_limit():
    doc = _document(5)
    unit = doc.units[0]
    tight = TokenBudgetEstimator(max_tokens_per_request=4100)
    assert tight.estimate(unit, doc).strategy == Strategy.CHUNKED
    assert TokenBudgetEstimator(max_tokens_per_request=100000).estimate(unit, doc).strategy == Strategy.SINGLE


def test_cost_grows_with_unit_size():
    doc = _document(1)
    small = UnitRecord(unit_number=2, title="t", topics=["a"])
    big = UnitRecord(unit_number=2, title="t", topics=["a" * 5000])
    estimator = TokenBudgetEstimator()
    assert estimator.estimate(big, doc).estimated_cost > estimator.estimate(small, doc).estimated_cost
