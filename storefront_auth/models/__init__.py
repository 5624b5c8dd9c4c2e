"""ORM model exports."""

from storefront_auth.models.two_factor import TwoFactorEnrollmentRecord

__all__ = ["TwoFactorEnrollmentRecord"]
