import azure.functions as func

from duplicates_detail import handle_detection_run_detail, handle_duplicate_detail
from duplicates_detect import handle_duplicates_detect
from duplicates_list import handle_duplicates_list, handle_duplicates_stats
from duplicates_merge import handle_duplicate_merge
from duplicates_resolve import handle_duplicate_resolve
from function_app import app
from utils.cors import build_cors_headers


def _preflight(req: func.HttpRequest, methods: list):
    cors = build_cors_headers(req, methods)
    if req.method == "OPTIONS":
        return cors, func.HttpResponse("", status_code=204, headers=cors)
    return cors, None


@app.function_name(name="DuplicatesList")
@app.route(route="duplicates", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def duplicates_list(req: func.HttpRequest) -> func.HttpResponse:
    cors, preflight = _preflight(req, ["GET", "OPTIONS"])
    if preflight:
        return preflight
    return handle_duplicates_list(req, cors)


@app.function_name(name="DuplicatesStats")
@app.route(route="duplicates/stats", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def duplicates_stats(req: func.HttpRequest) -> func.HttpResponse:
    cors, preflight = _preflight(req, ["GET", "OPTIONS"])
    if preflight:
        return preflight
    return handle_duplicates_stats(req, cors)


@app.function_name(name="DuplicatesDetect")
@app.route(route="duplicates/detect", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def duplicates_detect(req: func.HttpRequest) -> func.HttpResponse:
    cors, preflight = _preflight(req, ["POST", "OPTIONS"])
    if preflight:
        return preflight
    return handle_duplicates_detect(req, cors)


@app.function_name(name="DuplicatesRunDetail")
@app.route(route="duplicates/runs/{run_id}", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def duplicates_run_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors, preflight = _preflight(req, ["GET", "OPTIONS"])
    if preflight:
        return preflight
    return handle_detection_run_detail(req, cors)


@app.function_name(name="DuplicatesDetail")
@app.route(route="duplicates/{duplicate_id}", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def duplicates_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors, preflight = _preflight(req, ["GET", "OPTIONS"])
    if preflight:
        return preflight
    return handle_duplicate_detail(req, cors)


@app.function_name(name="DuplicatesResolve")
@app.route(route="duplicates/{duplicate_id}/resolve", methods=["PATCH", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def duplicates_resolve(req: func.HttpRequest) -> func.HttpResponse:
    cors, preflight = _preflight(req, ["PATCH", "OPTIONS"])
    if preflight:
        return preflight
    return handle_duplicate_resolve(req, cors)


@app.function_name(name="DuplicatesMerge")
@app.route(route="duplicates/{duplicate_id}/merge", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def duplicates_merge(req: func.HttpRequest) -> func.HttpResponse:
    cors, preflight = _preflight(req, ["POST", "OPTIONS"])
    if preflight:
        return preflight
    return handle_duplicate_merge(req, cors)
