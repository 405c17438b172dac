from .constants import ACTOR_CLIENT, ACTOR_PROVIDER, ACTOR_SYSTEM
from .models import ClientCompany, Provider

PROVIDER_CACHE_ATTR = "_provider_profile_cache"
CLIENT_COMPANY_CACHE_ATTR = "_client_company_cache"


def get_provider_for_user(user):
    if not user or not getattr(user, "is_authenticated", False):
        return None
    if hasattr(user, PROVIDER_CACHE_ATTR):
        return getattr(user, PROVIDER_CACHE_ATTR)
    provider = Provider.objects.filter(user_id=user.id).first()
    setattr(user, PROVIDER_CACHE_ATTR, provider)
    return provider


def get_client_company_for_user(user):
    if not user or not getattr(user, "is_authenticated", False):
        return None
    if hasattr(user, CLIENT_COMPANY_CACHE_ATTR):
        return getattr(user, CLIENT_COMPANY_CACHE_ATTR)
    client_company = ClientCompany.objects.filter(user_id=user.id).first()
    setattr(user, CLIENT_COMPANY_CACHE_ATTR, client_company)
    return client_company


def infer_actor_role(user):
    if get_provider_for_user(user):
        return ACTOR_PROVIDER
    if get_client_company_for_user(user):
        return ACTOR_CLIENT
    return ACTOR_SYSTEM
