from spe_cantines.etl import transform


def test_to_establishment_normalizes_fields():
    row = {
        "id": 42,
        "siret": 11000000000001.0,
        "name": "  Cantine X ",
        "city_insee_code": "75056",
        "sector_list": "",
        "daily_meal_count": "150",
        "yearly_meal_count": "-",
        "active_on_ma_cantine": "True",
        "declaration_donnees_2023": "True",
        "declaration_donnees_2024": "False",
    }

    est = transform.to_establishment(row, position=0)

    assert est.id == "42"
    assert est.siret == "11000000000001"
    assert est.name == "Cantine X"
    assert est.sector_list is None
    assert est.daily_meal_count == 150.0
    assert est.yearly_meal_count is None
    assert est.declared_years == frozenset({"2023"})
    assert est.raw_snapshot is row


def test_identifier_falls_back_to_row_id_then_position():
    rows = [{"__id": 7}, {}]

    ests = transform.to_establishments(rows)

    assert [est.id for est in ests] == ["7", "1"]


def test_index_declarations_skips_rows_without_siret():
    rows = [
        {"canteen_siret": "11000000000001", "teledeclaration_ratio_bio": "0.25", "teledeclaration_type": "DETAILED"},
        {"canteen_siret": None, "teledeclaration_ratio_bio": "0.5"},
        {"canteen_siret": "11000000000001", "teledeclaration_ratio_bio": "0.3"},
    ]

    indexed = transform.index_declarations(rows, "2024")

    assert list(indexed) == ["11000000000001"]
    declaration = indexed["11000000000001"]
    assert declaration.ratio_bio == 0.3
    assert declaration.year == "2024"
    assert declaration.has_ratios is True


def test_true_and_missing_values():
    assert transform.is_true_value(True)
    assert transform.is_true_value("1")
    assert not transform.is_true_value("False")
    assert not transform.is_true_value(None)
    assert transform.is_missing("-")
    assert transform.is_missing("")
    assert not transform.is_missing(0)
