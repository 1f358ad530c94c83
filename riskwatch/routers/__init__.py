from riskwatch.routers.alerts import router as alerts_router
from riskwatch.routers.batch import router as batch_router
from riskwatch.routers.reports import router as reports_router
from riskwatch.routers.verify import router as verify_router
from riskwatch.routers.watchlist import router as watchlist_router
