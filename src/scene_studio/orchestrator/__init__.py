"""Generation orchestration engine for storyboard, asset and video jobs.

Why plain asyncio instead of a task queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The work here is a few dozen slow remote calls per user action, issued from
one process that also owns the project state. What matters is ordering and
bookkeeping, not distribution:

- Shots at one location are generated strictly in order, each starting only
  after the previous one finished; different locations run side by side
  under one FIFO concurrency limit.
- Every job kind gets the same bounded retry, and a batch never stops on the
  first failure. A single review pass retries what is still missing.
- Video jobs return a handle; polling continues after the batch returns and
  re-attaches after a restart from the handle stored on the shot.
- The only state that must survive a crash is a small table of in-flight
  descriptors, swept once each kind's timeout has passed.

A broker would add an operational dependency while all of the above would
still be custom logic inside the workers.
"""
