from .common import *  # noqa
from .auth import *  # noqa
from .master import *  # noqa
from .orders import *  # noqa
from .tracking import *  # noqa
from .stages import *  # noqa
from .cards import *  # noqa
from .notifications import *  # noqa
from .security_audit import *  # noqa

# Platform event-bus tables (transactional outbox + webhook subscriptions)
from app.events.models import *  # noqa
