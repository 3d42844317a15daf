from paperpilot.risk.sizing import PositionSizer


def test_equal_sizing_uses_max_fraction() -> None:
    sizer = PositionSizer(hard_max_pct=5.0)
    size = sizer.calculate_size(
        portfolio_value=10_000.0,
        price=100.0,
        strategy="equal",
        max_position_pct=5.0,
        confidence=90.0,
    )
    assert size is not None
    assert size.fraction == 0.05
    assert size.quantity == 5.0
    assert size.notional == 500.0


def test_confidence_sizing_scales_fraction() -> None:
    sizer = PositionSizer(hard_max_pct=5.0)
    size = sizer.calculate_size(
        portfolio_value=10_000.0,
        price=100.0,
        strategy="confidence",
        max_position_pct=4.0,
        confidence=50.0,
    )
    assert size is not None
    assert size.quantity == 2.0


def test_sizer_never_exceeds_hard_max() -> None:
    sizer = PositionSizer(hard_max_pct=5.0)
    assert sizer.fraction("equal", 25.0, 100.0) == 0.05
    assert sizer.fraction("confidence", 25.0, 250.0) == 0.05


def test_sizer_rounds_down_to_step() -> None:
    sizer = PositionSizer(hard_max_pct=5.0, quantity_step=0.01)
    size = sizer.calculate_size(
        portfolio_value=1_000.0,
        price=33.0,
        strategy="equal",
        max_position_pct=5.0,
        confidence=80.0,
    )
    assert size is not None
    assert size.quantity == 1.51


def test_sizer_returns_none_below_min_notional() -> None:
    sizer = PositionSizer(hard_max_pct=5.0, min_notional=10.0)
    size = sizer.calculate_size(
        portfolio_value=100.0,
        price=100.0,
        strategy="equal",
        max_position_pct=5.0,
        confidence=80.0,
    )
    assert size is None
    assert sizer.calculate_size(0.0, 100.0, "equal", 5.0, 80.0) is None
    assert sizer.calculate_size(1_000.0, 0.0, "equal", 5.0, 80.0) is None
