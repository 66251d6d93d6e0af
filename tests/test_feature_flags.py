from flask_app.models import OrganizationFeatureFlag, SystemFeatureFlag
from flask_app.utils.feature_flags import check_feature_flag, get_feature_flag, set_feature_flag


class TestFeatureFlagUtilities:
    """Test feature flag utility functions"""

    def test_missing_flag_returns_default(self, test_organization):
        assert get_feature_flag("nonexistent_flag", organization_id=test_organization.id, default=False) is False

    def test_system_flag_is_fallback(self, test_organization):
        set_feature_flag("identity_resolution_enabled", False, is_system_flag=True)

        assert get_feature_flag("identity_resolution_enabled", organization_id=test_organization.id) is False

    def test_organization_flag_wins_over_system(self, test_organization):
        set_feature_flag("identity_resolution_enabled", False, is_system_flag=True)
        set_feature_flag("identity_resolution_enabled", True, organization_id=test_organization.id)

        assert check_feature_flag("identity_resolution_enabled", organization_id=test_organization.id) is True

    def test_set_without_organization_context_fails(self):
        assert set_feature_flag("some_flag", True) is False

    def test_typed_values(self, test_organization):
        OrganizationFeatureFlag.set_flag(test_organization.id, "identity_auto_apply_threshold", 0.95, "float")
        OrganizationFeatureFlag.set_flag(test_organization.id, "identity_sources", ["crm", "ecom"], "json")
        SystemFeatureFlag.set_flag("candidate_page_size", 25, "integer")

        assert OrganizationFeatureFlag.get_flag(test_organization.id, "identity_auto_apply_threshold") == 0.95
        assert OrganizationFeatureFlag.get_flag(test_organization.id, "identity_sources") == ["crm", "ecom"]
        assert SystemFeatureFlag.get_flag("candidate_page_size") == 25

    def test_set_flag_updates_existing_row(self, test_organization):
        OrganizationFeatureFlag.set_flag(test_organization.id, "identity_auto_apply_enabled", True)
        OrganizationFeatureFlag.set_flag(test_organization.id, "identity_auto_apply_enabled", False)

        assert OrganizationFeatureFlag.query.filter_by(flag_name="identity_auto_apply_enabled").count() == 1
        assert OrganizationFeatureFlag.get_flag(test_organization.id, "identity_auto_apply_enabled") is False

    def test_unsupported_flag_type(self, test_organization):
        import pytest

        with pytest.raises(ValueError):
            OrganizationFeatureFlag.set_flag(test_organization.id, "x", "y", flag_type="yaml")
