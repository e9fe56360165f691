# -*- coding: utf-8 -*-
import argparse
import json
import time

from client import ClientJobHandle, JobApiClient, JsonFileStorage
from config import CLIENT_STATE_PATH, JOB_API_BASE_URL


def main():
    parser = argparse.ArgumentParser(description="Submit a generation job and follow it to the end")
    parser.add_argument("--base-url", default=JOB_API_BASE_URL, help="Job API base URL")
    parser.add_argument("--state-file", default=CLIENT_STATE_PATH, help="Where the job handle is persisted")
    parser.add_argument("--request", default='{"tags": "lullaby"}', help="JSON request payload")
    parser.add_argument("--user", default=None, help="Value for the X-User-Id header")
    parser.add_argument("--cancel-after", type=float, default=None, help="Cancel the job after N seconds")
    args = parser.parse_args()

    api = JobApiClient(args.base_url, owner_id=args.user)
    storage = JsonFileStorage(args.state_file)
    handle = ClientJobHandle.restore(
        api,
        storage,
        on_update=lambda state: print(f"... {state}", flush=True),
        on_reset=lambda job_id: print(f"Job {job_id} is gone, start over", flush=True),
        on_error=lambda message: print(f"Error: {message}", flush=True),
    )
    try:
        if handle.job_id:
            print(f"Resuming job {handle.job_id} ({handle.local_state})")
        else:
            job_id = handle.start(json.loads(args.request))
            print(f"Started job {job_id}")

        if args.cancel_after is not None:
            time.sleep(args.cancel_after)
            print(f"Cancelled, server says: {handle.cancel()}")
            return

        outcome = handle.wait()
        if outcome is None:
            print(f"No outcome; local state: {handle.local_state}")
        elif outcome.state == "done":
            print(f"Done: {outcome.result_ref}")
        else:
            print(f"Finished with {outcome.state}: {outcome.error_message or '-'}")
    finally:
        handle.close()
        api.close()


if __name__ == "__main__":
    main()
