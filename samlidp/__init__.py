"""Log in to JumpCloud, Keycloak and NetIQ identity providers and retrieve the SAML assertion."""

__version__ = "0.1.0"