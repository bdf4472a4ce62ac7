from __future__ import annotations

import pytest
from pydantic import ValidationError

from tenantplane.core.config import get_settings
from tenantplane.core.errors import DuplicateServiceError, JobConfigurationError, UnknownServiceError
from tenantplane.services.catalog import ServiceCatalog, ServiceRegistration


def _registration(name: str = "ProductService", **overrides) -> ServiceRegistration:
    values = {
        "service_name": name,
        "image_name": "product-svc",
        "url_prefix": "/products/",
        "manifest_dir": "product-service/kubernetes",
    }
    values.update(overrides)
    return ServiceRegistration(**values)


def test_registration_defaults() -> None:
    registration = _registration()
    assert registration.url_prefix == "products"
    assert registration.deploy_project == "ProductServiceTenantDeploy"
    assert registration.service_account_mode == "tenant"
    assert registration.resolved_image_repository() == "product-svc"
    assert (
        registration.resolved_image_repository("123.dkr.ecr.us-east-1.amazonaws.com/")
        == "123.dkr.ecr.us-east-1.amazonaws.com/product-svc"
    )


@pytest.mark.parametrize("bad_name", ["", "Product Service", "deploy:Product"])
def test_service_name_must_fit_detail_type(bad_name: str) -> None:
    with pytest.raises(ValidationError):
        _registration(bad_name)


def test_catalog_rejects_duplicate_names() -> None:
    catalog = ServiceCatalog([_registration()])
    with pytest.raises(DuplicateServiceError):
        catalog.register(_registration(image_name="other-svc"))


def test_catalog_preserves_registration_order() -> None:
    catalog = ServiceCatalog([_registration("OrderService"), _registration("ProductService")])
    assert catalog.names() == ["OrderService", "ProductService"]
    assert "OrderService" in catalog
    assert len(catalog) == 2
    with pytest.raises(UnknownServiceError):
        catalog.get("BillingService")


def test_catalog_from_settings_uses_default_services() -> None:
    catalog = ServiceCatalog.from_settings(get_settings())
    assert catalog.names() == ["ProductService", "OrderService"]
    assert catalog.get("OrderService").url_prefix == "orders"


def test_invalid_catalog_json_is_a_configuration_error() -> None:
    with pytest.raises(JobConfigurationError):
        ServiceCatalog.from_json('[{"service_name": "ProductService"}]')
