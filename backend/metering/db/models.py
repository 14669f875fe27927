from metering.auth.models import User  # noqa: F401
from metering.apikeys.models import ApiKey  # noqa: F401
from metering.quota.models import ApiCallPack, ApiQuota, ApiTier, ApiUsageLog  # noqa: F401
from metering.ratelimit.models import RateLimitEvent, RateLimitOverride  # noqa: F401
from metering.tokens.models import TokenPricing, TokenTransaction, TokenWallet  # noqa: F401
