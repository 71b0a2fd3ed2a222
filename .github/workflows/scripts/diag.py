import os, sys, asyncio, traceback

def log(msg): print(f"[DIAG] {msg}", flush=True)

def mask(v, keep=3):
    if not v: return "<empty>"
    return v[:keep] + "…" + str(len(v))

async def check_remotes(settings):
    rc = 0
    from attendance_etl.adapters import build

    # D) WooCommerce: one product page
    if settings.woocommerce_url:
        try:
            async with build("woocommerce", settings) as woo:
                products = await woo.list_products()
            log(f"WooCommerce OK, {len(products)} products")
        except Exception:
            log("ERROR: WooCommerce request failed")
            traceback.print_exc()
            rc = 1
    else:
        log("WARN: WOOCOMMERCE_URL empty, skipping WooCommerce check")

    # E) Loops API key
    if settings.loops_api_key:
        async with build("loops", settings) as loops:
            ok = await loops.test_connection()
        log(f"Loops API key valid? {ok}")
        if not ok:
            rc = 1
    else:
        log("WARN: LOOPS_API_KEY empty, mirror disabled")
    return rc

def main():
    rc = 0

    # A) base env
    log("Python: " + sys.version)
    for k in ["DATABASE_URL", "WOOCOMMERCE_URL", "WOOCOMMERCE_CONSUMER_KEY", "WOOCOMMERCE_CONSUMER_SECRET",
              "LOOPS_API_KEY", "LOOPS_ACTIVE_MEMBERS_LIST_ID"]:
        log(f"env {k}: {mask(os.getenv(k, ''))}")

    # B) import package
    try:
        from attendance_etl.core.config import settings
        from attendance_etl.storage.database import init_db, make_engine
        log("import attendance_etl OK")
    except Exception:
        log("ERROR: cannot import attendance_etl")
        traceback.print_exc()
        sys.exit(1)

    # C) database connect + schema
    try:
        engine = make_engine(settings.database_url)
        init_db(engine)
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        log("Database OK: " + engine.url.render_as_string(hide_password=True))
    except Exception:
        log("ERROR: database connect failed")
        traceback.print_exc()
        rc = 1

    rc = max(rc, asyncio.run(check_remotes(settings)))
    sys.exit(rc)

if __name__ == "__main__":
    main()
