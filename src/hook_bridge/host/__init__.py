"""Host side of the bridge.

The host process runs a single cooperative thread (``HostLoop``) that owns
the test engine and the compiler. Requests arrive on the command channel's
own threads and are handed over through ``MainThreadQueue``; jobs then run
entirely on the host thread, ticking once per loop iteration, and report
back through a ``ResponseStream`` that the request thread drains into the
HTTP response.

Only one job is active at a time. A second request while the first job's
stream is open is answered with ``409`` instead of being queued.
"""
