# vf_bridge/routes/__init__.py
"""
HTTP blueprints. Each module exposes a flask.Blueprint named **bp**; the app
factory registers them and stores the bridge runtime in
`app.extensions["runtime"]` for the routes to reach via `current_app`.
"""
