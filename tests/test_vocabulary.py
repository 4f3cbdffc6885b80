from voice_intake.vocabulary import MaintenanceType, MetaCategory, maintenance_type_catalog, match_maintenance_type


def test_match_by_name_label_and_synonym():
    assert match_maintenance_type("REPAIR") is MaintenanceType.REPAIR
    assert match_maintenance_type("Collaudo") is MaintenanceType.ACCEPTANCE_TEST
    assert match_maintenance_type("ispezione") is MaintenanceType.INSPECTION


def test_match_synonym_inside_phrase():
    assert match_maintenance_type("ho cambiato il filtro") is MaintenanceType.REPLACEMENT


def test_fuzzy_match_and_miss():
    assert match_maintenance_type("riparazzione") is MaintenanceType.REPAIR
    assert match_maintenance_type("pizza") is None
    assert match_maintenance_type("") is None


def test_meta_categories():
    lifecycle = MaintenanceType.by_meta_category(MetaCategory.LIFECYCLE)
    assert MaintenanceType.INSTALLATION in lifecycle
    assert MaintenanceType.REPAIR not in lifecycle


def test_catalog_lists_every_type():
    catalog = maintenance_type_catalog()
    assert all(t.name in catalog for t in MaintenanceType)
