from mangum import Mangum

from ledger_engine.api import app

handler = Mangum(app, api_gateway_base_path="/api")
