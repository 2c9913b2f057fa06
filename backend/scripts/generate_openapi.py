"""Print the OpenAPI schema of the billing operations API as JSON."""

import json

from billing_ops.main import app

if __name__ == "__main__":
    print(json.dumps(app.openapi()))
